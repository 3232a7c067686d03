"""
tokengate - State store

Policies, members, join requests, attestations and the audit log, kept
in memory and persisted to a single JSON file (atomic write via temp
file + rename). Pass path=None for a purely in-memory store.
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .gate_types import (
    Attestation, AuditEntry, JoinRequest, JoinRequestStatus, Member, MemberState, Policy,
)

log = logging.getLogger(__name__)

STORE_VERSION = "1.0"
MAX_LOG_ENTRIES = 10000


def _key(chat_id: int, user_id: int) -> str:
    return f"{chat_id}:{user_id}"


class GateStore:
    """
    Persisted membership state, keyed by (chat_id, user_id).

    Reads return copies, so a sweep's snapshot never changes under it.
    Writes replace whole records (last writer wins).
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self.policies: Dict[int, Policy] = {}
        self.members: Dict[str, Member] = {}
        self.join_requests: Dict[str, JoinRequest] = {}
        self.attestations: List[Attestation] = []
        self.logs: List[AuditEntry] = []
        self._batch_depth = 0
        self._dirty = False
        self._load()

    def _load(self):
        """Load from disk."""
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
            for item in data.get("policies", []):
                policy = Policy.from_dict(item)
                self.policies[policy.chat_id] = policy
            for item in data.get("members", []):
                member = Member.from_dict(item)
                self.members[_key(*member.key)] = member
            for item in data.get("join_requests", []):
                request = JoinRequest.from_dict(item)
                self.join_requests[_key(*request.key)] = request
            self.attestations = [Attestation.from_dict(a) for a in data.get("attestations", [])]
            self.logs = [AuditEntry.from_dict(e) for e in data.get("logs", [])]
            log.info(f"Loaded {len(self.members)} members, {len(self.policies)} policies, "
                     f"{len(self.join_requests)} join requests from {self.path}")
        except (OSError, ValueError, KeyError) as e:
            log.error(f"Failed to load state from {self.path}: {e}")

    def save(self):
        """Persist to disk (atomic write via temp file + rename)."""
        if self.path is None:
            return
        with self._lock:
            data = {
                "version": STORE_VERSION,
                "updated_ts": int(time.time()),
                "policies": [p.to_dict() for p in self.policies.values()],
                "members": [m.to_dict() for m in self.members.values()],
                "join_requests": [r.to_dict() for r in self.join_requests.values()],
                "attestations": [a.to_dict() for a in self.attestations],
                "logs": [e.to_dict() for e in self.logs[-MAX_LOG_ENTRIES:]],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.path.with_suffix(".tmp")
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
            tmp_file.replace(self.path)
            self._dirty = False

    def _changed(self):
        """Save now, or once at the end of the enclosing batch."""
        with self._lock:
            if self._batch_depth:
                self._dirty = True
            else:
                self.save()

    @contextmanager
    def batch(self):
        """
        Group many writes into one save. Batches nest; the file is written
        when the outermost batch exits, if anything changed.
        """
        with self._lock:
            self._batch_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._batch_depth -= 1
                if not self._batch_depth and self._dirty:
                    self.save()

    # =========================================================================
    # POLICIES
    # =========================================================================

    def get_policy(self, chat_id: int) -> Optional[Policy]:
        with self._lock:
            policy = self.policies.get(chat_id)
            return replace(policy) if policy else None

    def set_policy(self, policy: Policy):
        """Replace the chat's policy (at most one per chat)."""
        with self._lock:
            self.policies[policy.chat_id] = replace(policy)
            self._changed()

    def delete_policy(self, chat_id: int) -> bool:
        with self._lock:
            removed = self.policies.pop(chat_id, None) is not None
            if removed:
                self._changed()
            return removed

    def chats_with_policy(self) -> List[int]:
        with self._lock:
            return sorted(self.policies)

    # =========================================================================
    # MEMBERS
    # =========================================================================

    def get_member(self, chat_id: int, user_id: int) -> Optional[Member]:
        with self._lock:
            member = self.members.get(_key(chat_id, user_id))
            return replace(member) if member else None

    def upsert_member(self, member: Member):
        with self._lock:
            self.members[_key(*member.key)] = replace(member)
            self._changed()

    def delete_member(self, chat_id: int, user_id: int) -> bool:
        with self._lock:
            removed = self.members.pop(_key(chat_id, user_id), None) is not None
            if removed:
                self._changed()
            return removed

    def list_members(self, chat_id: int, state: Optional[MemberState] = None) -> List[Member]:
        """Snapshot of a chat's tracked members, optionally filtered by state."""
        with self._lock:
            return [
                replace(m) for m in self.members.values()
                if m.chat_id == chat_id and (state is None or m.state == state)
            ]

    # =========================================================================
    # JOIN REQUESTS
    # =========================================================================

    def get_join_request(self, chat_id: int, user_id: int) -> Optional[JoinRequest]:
        with self._lock:
            request = self.join_requests.get(_key(chat_id, user_id))
            return replace(request) if request else None

    def upsert_join_request(self, request: JoinRequest):
        with self._lock:
            self.join_requests[_key(*request.key)] = replace(request)
            self._changed()

    def list_join_requests(self, status: Optional[JoinRequestStatus] = None,
                           chat_id: Optional[int] = None,
                           user_id: Optional[int] = None) -> List[JoinRequest]:
        with self._lock:
            return [
                replace(r) for r in self.join_requests.values()
                if (status is None or r.status == status)
                and (chat_id is None or r.chat_id == chat_id)
                and (user_id is None or r.user_id == user_id)
            ]

    def delete_join_requests(self, keys: List[Tuple[int, int]]) -> int:
        with self._lock:
            removed = 0
            for chat_id, user_id in keys:
                if self.join_requests.pop(_key(chat_id, user_id), None) is not None:
                    removed += 1
            if removed:
                self._changed()
            return removed

    # =========================================================================
    # ATTESTATIONS
    # =========================================================================

    def add_attestation(self, attestation: Attestation):
        with self._lock:
            self.attestations.append(replace(attestation))
            self._changed()

    def list_attestations(self, chat_id: Optional[int] = None,
                          user_id: Optional[int] = None) -> List[Attestation]:
        with self._lock:
            return [
                replace(a) for a in self.attestations
                if (chat_id is None or a.chat_id == chat_id)
                and (user_id is None or a.user_id == user_id)
            ]

    def purge_attestations(self, now: Optional[float] = None) -> int:
        """Drop attestations past their expiry. Returns count removed."""
        now = time.time() if now is None else now
        with self._lock:
            before = len(self.attestations)
            self.attestations = [a for a in self.attestations if a.expires_at > now]
            removed = before - len(self.attestations)
            if removed:
                self._changed()
            return removed

    # =========================================================================
    # AUDIT LOG
    # =========================================================================

    def append_log(self, entry: AuditEntry):
        with self._lock:
            self.logs.append(entry)
            if len(self.logs) > MAX_LOG_ENTRIES:
                self.logs = self.logs[-MAX_LOG_ENTRIES:]
            self._changed()

    def list_logs(self, chat_id: Optional[int] = None, event: Optional[str] = None,
                  user_id: Optional[int] = None) -> List[AuditEntry]:
        with self._lock:
            return [
                e for e in self.logs
                if (chat_id is None or e.chat_id == chat_id)
                and (event is None or e.event == event)
                and (user_id is None or e.user_id == user_id)
            ]

    def stats(self) -> dict:
        with self._lock:
            return {
                "policies": len(self.policies),
                "members": len(self.members),
                "join_requests": len(self.join_requests),
                "pending_join_requests": sum(
                    1 for r in self.join_requests.values()
                    if r.status == JoinRequestStatus.PENDING),
                "attestations": len(self.attestations),
                "log_entries": len(self.logs),
            }
