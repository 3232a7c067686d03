"""
tokengate - Compliance engine

Member and join request lifecycles, admission of verified claims, and the
three sweeps over a chat's tracked members:

  periodic_check  automatic; skips admins and grandfathered members
  recheck         read-only report; never writes, never acts
  enforce         explicit; evaluates everyone against the live policy,
                  stamps the live policy hash, never touches admins

Member lifecycle:
  (none) -> pending -> verified -> restricted | kicked -> verified -> (removed)

Join request lifecycle:
  pending (48h) -> approved | declined | expired -> purged after 30 days

Chat platform and balance lookups are external. Every call to them is
bounded by a timeout, and a failure on one member is tallied without
aborting the rest of the sweep.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import DMBlockedError, GateError, StateConflictError, UpstreamError
from .gate_types import (
    Attestation, AuditEntry, JoinRequest, JoinRequestStatus, Member, MemberState,
    OnFail, Policy, PolicyKind, VerificationMode,
)
from .messages import DEFAULT_DOMAIN, is_valid_message
from .policy import (
    BalanceFetcher, PolicyOutcome, evaluate_address, evaluate_member,
    is_grandfathered, policy_hash,
)
from .store import GateStore
from .verifier import verify_message

log = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR

ADMIN_STATUSES = ("creator", "administrator")
GONE_STATUSES = ("left", "kicked")


# =============================================================================
# CHAT PLATFORM CONTRACT
# =============================================================================

class ChatPlatform:
    """
    Side effects on the chat platform.

    approve/decline on an already-processed request raise
    StateConflictError; send_dm to a user who blocked the bot raises
    DMBlockedError. Other failures raise UpstreamError.
    """

    async def approve(self, chat_id: int, user_id: int):
        raise NotImplementedError

    async def decline(self, chat_id: int, user_id: int):
        raise NotImplementedError

    async def restrict(self, chat_id: int, user_id: int):
        raise NotImplementedError

    async def unrestrict(self, chat_id: int, user_id: int):
        raise NotImplementedError

    async def remove(self, chat_id: int, user_id: int):
        """Remove from the chat without banning (user may rejoin)."""
        raise NotImplementedError

    async def get_member_status(self, chat_id: int, user_id: int) -> str:
        """'creator', 'administrator', 'member', 'restricted', 'left' or 'kicked'."""
        raise NotImplementedError

    async def is_admin(self, chat_id: int, user_id: int) -> bool:
        return await self.get_member_status(chat_id, user_id) in ADMIN_STATUSES

    async def get_member_count(self, chat_id: int) -> int:
        raise NotImplementedError

    async def send_dm(self, user_id: int, text: str):
        raise NotImplementedError


# =============================================================================
# RESULTS
# =============================================================================

class Reason:
    """Admission reason codes returned to the web layer."""
    OK = "ok"
    INVALID_REQUEST = "invalid_request"
    INVALID_MESSAGE = "invalid_message"
    SIGNATURE_INVALID = "signature_invalid"
    BALANCE_INSUFFICIENT = "balance_insufficient"
    UPSTREAM_ERROR = "upstream_error"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"


@dataclass
class AdmissionResult:
    ok: bool
    reason: str
    method: Optional[str] = None
    warning: Optional[str] = None
    details: str = ""

    def to_dict(self) -> dict:
        data = {"ok": self.ok, "reason": self.reason}
        if self.method:
            data["method"] = self.method
        if self.warning:
            data["warning"] = self.warning
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class SweepReport:
    """Counts from periodic_check / enforce."""
    chat_id: int
    checked: int = 0
    compliant: int = 0
    restricted: int = 0
    kicked: int = 0
    skipped_admins: int = 0
    skipped_grandfathered: int = 0
    grandfathered_updated: int = 0
    removed_left: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class RecheckReport:
    """Read-only compliance snapshot of one chat."""
    chat_id: int
    policy_hash: str
    total_members: Optional[int] = None
    tracked: int = 0
    untracked: Optional[int] = None
    admins: int = 0
    compliant: int = 0
    noncompliant: int = 0
    grandfathered: int = 0
    left: int = 0
    errors: int = 0
    noncompliant_users: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class CleanupReport:
    expired: int = 0
    purged: int = 0
    attestations_purged: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# =============================================================================
# ENGINE
# =============================================================================

class ComplianceEngine:
    """
    Applies chat policies to members.

    Usage:
        engine = ComplianceEngine(store, TelegramClient(token), CounterpartyClient())
        result = await engine.admit(chat_id, user_id, address, message, signature)
        report = await engine.enforce(chat_id)
    """

    def __init__(self, store: GateStore, chat: ChatPlatform, fetch_balances: BalanceFetcher,
                 concurrency: int = 10, call_timeout: float = 15.0,
                 join_request_ttl_hours: int = 48, join_request_retention_days: int = 30,
                 attestation_ttl_days: int = 90, verify_domain: str = DEFAULT_DOMAIN,
                 verify_url: str = "", clock: Callable[[], float] = time.time):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.chat = chat
        self.fetch_balances = fetch_balances
        self.concurrency = concurrency
        self.call_timeout = call_timeout
        self.join_request_ttl = join_request_ttl_hours * HOUR
        self.join_request_retention = join_request_retention_days * DAY
        self.attestation_ttl = attestation_ttl_days * DAY
        self.verify_domain = verify_domain
        self.verify_url = verify_url.rstrip("/")
        self.clock = clock

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    async def _call(self, coro):
        """Await an external call with the per-call timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            raise UpstreamError(f"external call timed out after {self.call_timeout}s")

    async def _evaluate(self, member: Member, policy: Optional[Policy]) -> PolicyOutcome:
        """Policy evaluation with the blocking balance lookup off the event loop."""
        if policy is None or policy.kind == PolicyKind.BASIC or not member.address:
            return evaluate_member(member, policy, self.fetch_balances)
        loop = asyncio.get_event_loop()
        return await self._call(loop.run_in_executor(
            None, lambda: evaluate_member(member, policy, self.fetch_balances)))

    async def _evaluate_address(self, address: str, policy: Optional[Policy]) -> PolicyOutcome:
        loop = asyncio.get_event_loop()
        return await self._call(loop.run_in_executor(
            None, lambda: evaluate_address(address, policy, self.fetch_balances)))

    def _audit(self, chat_id: int, event: str, user_id: Optional[int] = None,
               level: str = "info", **metadata):
        self.store.append_log(AuditEntry(
            chat_id=chat_id, event=event, level=level, user_id=user_id,
            metadata=metadata, timestamp=self.clock()))

    def verification_link(self, chat_id: int, user_id: int) -> str:
        return f"{self.verify_url}/verify?chat_id={chat_id}&user_id={user_id}"

    async def _notify(self, member: Member, text: str) -> bool:
        """
        Best-effort DM. A blocked DM is recorded as dm_failure on the
        member record; nothing is raised.
        """
        try:
            await self._call(self.chat.send_dm(member.user_id, text))
            return True
        except DMBlockedError:
            log.warning(f"DM blocked by user {member.user_id}")
            member.dm_failure = True
        except GateError as e:
            log.warning(f"DM to user {member.user_id} failed: {e}")
        return False

    async def _resolve_join_request(self, action, chat_id: int, user_id: int) -> bool:
        """approve/decline on the platform; an already-processed request is a no-op."""
        try:
            await self._call(action(chat_id, user_id))
            return True
        except StateConflictError:
            log.info(f"Join request {chat_id}/{user_id} already processed")
            return False

    def _current_policy(self, chat_id: int) -> Optional[Policy]:
        return self.store.get_policy(chat_id)

    # -------------------------------------------------------------------------
    # policy administration
    # -------------------------------------------------------------------------

    def set_policy(self, policy: Policy) -> str:
        """
        Install a chat's policy. Existing members are not re-evaluated; the
        hash change grandfathers them until the next enforce().

        Returns:
            the new policy hash
        """
        old_hash = policy_hash(self.store.get_policy(policy.chat_id))
        self.store.set_policy(policy)
        new_hash = policy_hash(policy)
        self._audit(policy.chat_id, "policy_set", kind=policy.kind.value,
                    asset=policy.asset, min_amount=policy.min_amount,
                    on_fail=policy.on_fail.value, old_hash=old_hash, new_hash=new_hash)
        log.info(f"Policy for chat {policy.chat_id}: {old_hash} -> {new_hash}")
        return new_hash

    # -------------------------------------------------------------------------
    # join / leave events
    # -------------------------------------------------------------------------

    async def on_join_request(self, chat_id: int, user_id: int,
                              username: Optional[str] = None) -> JoinRequest:
        """Record a pending join request (48h) and DM the verification link."""
        now = self.clock()
        request = JoinRequest(chat_id=chat_id, user_id=user_id, requested_at=now,
                              expires_at=now + self.join_request_ttl, username=username)
        self.store.upsert_join_request(request)

        member = self.store.get_member(chat_id, user_id)
        if member is None or member.state != MemberState.VERIFIED:
            member = member or Member(chat_id=chat_id, user_id=user_id, joined_at=now)
            member.state = MemberState.PENDING
        member.username = username or member.username

        text = (f"To join, verify your address here (valid 48 hours):\n"
                f"{self.verification_link(chat_id, user_id)}")
        await self._notify(member, text)
        self.store.upsert_member(member)
        self._audit(chat_id, "join_request", user_id, username=username)
        log.info(f"Join request from {user_id} in chat {chat_id}")
        return request

    async def on_member_joined(self, chat_id: int, user_id: int,
                               username: Optional[str] = None) -> Optional[Member]:
        """
        A user entered directly (added or invite link). Only tracked when
        the chat has a policy. If the DM is blocked the user is restricted
        so they cannot post unverified.
        """
        if self._current_policy(chat_id) is None:
            return None
        member = self.store.get_member(chat_id, user_id)
        if member is not None and member.state == MemberState.VERIFIED:
            return member

        now = self.clock()
        member = Member(chat_id=chat_id, user_id=user_id, username=username, joined_at=now)
        text = (f"Welcome! Verify your address to keep access:\n"
                f"{self.verification_link(chat_id, user_id)}")
        delivered = await self._notify(member, text)
        if not delivered and member.dm_failure:
            try:
                await self._call(self.chat.restrict(chat_id, user_id))
                member.state = MemberState.RESTRICTED
                member.restricted_at = now
                self._audit(chat_id, "restricted", user_id, reason="dm_blocked")
            except GateError as e:
                log.error(f"Failed to restrict {user_id} in chat {chat_id}: {e}")
        self.store.upsert_member(member)
        self._audit(chat_id, "joined", user_id, username=username)
        return member

    def on_member_left(self, chat_id: int, user_id: int) -> bool:
        removed = self.store.delete_member(chat_id, user_id)
        if removed:
            self._audit(chat_id, "left", user_id)
            log.info(f"Member {user_id} left chat {chat_id}")
        return removed

    # -------------------------------------------------------------------------
    # admission
    # -------------------------------------------------------------------------

    async def _deny(self, chat_id: int, user_id: int, reason: str, details: str = "",
                    method: Optional[str] = None) -> AdmissionResult:
        request = self.store.get_join_request(chat_id, user_id)
        if request is not None and request.status == JoinRequestStatus.PENDING:
            try:
                await self._resolve_join_request(self.chat.decline, chat_id, user_id)
            except GateError as e:
                log.error(f"Failed to decline {user_id} in chat {chat_id}: {e}")
            request.status = JoinRequestStatus.DECLINED
            request.processed_at = self.clock()
            self.store.upsert_join_request(request)
        self._audit(chat_id, "declined", user_id, level="warn", reason=reason)
        log.warning(f"Denied {user_id} in chat {chat_id}: {reason}")
        return AdmissionResult(ok=False, reason=reason, method=method, details=details)

    async def admit(self, chat_id: int, user_id: int, address: str, message: str,
                    signature: str) -> AdmissionResult:
        """
        Admit a user who signed the verification message.

        message check -> signature (permissive) -> policy -> persist
        -> approve the join request if it is still pending
        """
        if not address or not signature or message is None:
            return AdmissionResult(ok=False, reason=Reason.INVALID_REQUEST)

        if not is_valid_message(message, user_id, chat_id, self.verify_domain):
            log.warning(f"Unexpected message from {user_id} for chat {chat_id}")
            return AdmissionResult(ok=False, reason=Reason.INVALID_MESSAGE)

        # Permissive mode also retries with the trailing whitespace some
        # wallets add to the text they sign
        result = verify_message(address, message, signature, VerificationMode.PERMISSIVE)
        if not result.valid:
            return await self._deny(chat_id, user_id, Reason.SIGNATURE_INVALID,
                                    details=result.details)

        policy = self._current_policy(chat_id)
        try:
            outcome = await self._evaluate_address(address, policy)
        except UpstreamError as e:
            log.error(f"Balance check failed for {address}: {e}")
            return AdmissionResult(ok=False, reason=Reason.UPSTREAM_ERROR,
                                   method=result.label, details=str(e))
        if not outcome.passed:
            return await self._deny(chat_id, user_id, Reason.BALANCE_INSUFFICIENT,
                                    method=result.label)

        now = self.clock()
        self.store.add_attestation(Attestation(
            chat_id=chat_id, user_id=user_id, address=address, verified_at=now,
            expires_at=now + self.attestation_ttl, method=result.label))

        previous = self.store.get_member(chat_id, user_id)
        member = previous or Member(chat_id=chat_id, user_id=user_id, joined_at=now)
        was_restricted = previous is not None and previous.state == MemberState.RESTRICTED
        member.address = address
        member.state = MemberState.VERIFIED
        member.policy_hash = policy_hash(policy)
        member.dm_failure = False
        member.last_checked_at = now
        member.restricted_at = None
        self.store.upsert_member(member)

        admission = AdmissionResult(ok=True, reason=Reason.OK, method=result.label)

        if was_restricted:
            try:
                await self._call(self.chat.unrestrict(chat_id, user_id))
                self._audit(chat_id, "reverified", user_id, address=address)
                log.info(f"Lifted restriction on {user_id} in chat {chat_id}")
            except GateError as e:
                log.error(f"Failed to unrestrict {user_id} in chat {chat_id}: {e}")

        # A late response to an expired or already handled request changes nothing
        request = self.store.get_join_request(chat_id, user_id)
        if request is not None and request.status == JoinRequestStatus.PENDING:
            request.status = JoinRequestStatus.APPROVED
            request.processed_at = now
            self.store.upsert_join_request(request)
            try:
                approved = await self._resolve_join_request(self.chat.approve, chat_id, user_id)
            except GateError as e:
                log.error(f"Failed to approve {user_id} in chat {chat_id}: {e}")
                approved = False
            if not approved:
                admission.warning = ("Verified, but the join request is no longer open. "
                                      "Request to join the group again.")
        elif request is not None and request.status == JoinRequestStatus.EXPIRED:
            admission.warning = "Verified, but the join request expired. Request to join again."

        self._audit(chat_id, "approved", user_id, address=address, method=result.label,
                    policy_hash=member.policy_hash)
        log.info(f"Admitted {user_id} to chat {chat_id} via {result.label}")
        return admission

    # -------------------------------------------------------------------------
    # sweeps
    # -------------------------------------------------------------------------

    async def _apply_on_fail(self, member: Member, action: OnFail, outcome: PolicyOutcome,
                             report: SweepReport, notify: bool):
        now = self.clock()
        if action == OnFail.KICK:
            await self._call(self.chat.remove(member.chat_id, member.user_id))
            member.state = MemberState.KICKED
            report.kicked += 1
            event = "soft_kicked"
        else:
            await self._call(self.chat.restrict(member.chat_id, member.user_id))
            member.state = MemberState.RESTRICTED
            member.restricted_at = now
            report.restricted += 1
            event = "restricted"
        self._audit(member.chat_id, event, member.user_id, level="warn", reason=outcome.value)
        log.warning(f"{event} {member.user_id} in chat {member.chat_id} ({outcome.value})")

        if notify:
            verb = "removed from" if action == OnFail.KICK else "restricted in"
            await self._notify(member, (
                f"You were {verb} the group because you no longer meet its requirements "
                f"({outcome.value.replace('_', ' ')}). Verify again here:\n"
                f"{self.verification_link(member.chat_id, member.user_id)}"))

    async def _gather_bounded(self, members: List[Member], worker):
        """Run worker(member) for each member with at most `concurrency` in flight."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(member: Member):
            async with semaphore:
                await worker(member)

        await asyncio.gather(*(run(m) for m in members))

    async def periodic_check(self, chat_id: int) -> SweepReport:
        """
        Automatic re-check of verified members. Grandfathered members and
        administrators are skipped; failures get the policy's on_fail.
        """
        report = SweepReport(chat_id=chat_id)
        policy = self._current_policy(chat_id)
        if policy is None:
            return report
        current_hash = policy_hash(policy)
        members = self.store.list_members(chat_id, MemberState.VERIFIED)

        async def check(member: Member):
            if is_grandfathered(member.policy_hash, current_hash):
                report.skipped_grandfathered += 1
                return
            try:
                if await self._call(self.chat.is_admin(chat_id, member.user_id)):
                    report.skipped_admins += 1
                    return
                report.checked += 1
                outcome = await self._evaluate(member, policy)
                member.last_checked_at = self.clock()
                if outcome.passed:
                    report.compliant += 1
                else:
                    await self._apply_on_fail(member, policy.on_fail, outcome, report,
                                              notify=False)
                self.store.upsert_member(member)
            except Exception as e:
                report.errors += 1
                log.error(f"Check failed for {member.user_id} in chat {chat_id}: {e}")

        with self.store.batch():
            await self._gather_bounded(members, check)
        log.info(f"Periodic check chat {chat_id}: {report.to_dict()}")
        return report

    async def run_periodic_checks(self) -> List[SweepReport]:
        """periodic_check() every chat with a policy; one bad chat does not stop the rest."""
        reports = []
        for chat_id in self.store.chats_with_policy():
            try:
                reports.append(await self.periodic_check(chat_id))
            except Exception as e:
                log.error(f"Periodic check failed for chat {chat_id}: {e}")
                reports.append(SweepReport(chat_id=chat_id, errors=1))
        return reports

    async def recheck(self, chat_id: int) -> RecheckReport:
        """Compliance report for a chat. Read-only: no writes, no platform actions."""
        policy = self._current_policy(chat_id)
        current_hash = policy_hash(policy)
        members = self.store.list_members(chat_id)
        report = RecheckReport(chat_id=chat_id, policy_hash=current_hash, tracked=len(members))

        try:
            report.total_members = await self._call(self.chat.get_member_count(chat_id))
            report.untracked = max(report.total_members - report.tracked, 0)
        except Exception as e:
            report.errors += 1
            log.error(f"Member count failed for chat {chat_id}: {e}")

        async def check(member: Member):
            try:
                status = await self._call(self.chat.get_member_status(chat_id, member.user_id))
                if status in GONE_STATUSES:
                    report.left += 1
                    return
                if status in ADMIN_STATUSES:
                    report.admins += 1
                    return
                if is_grandfathered(member.policy_hash, current_hash):
                    report.grandfathered += 1
                    return
                outcome = await self._evaluate(member, policy)
                if outcome.passed:
                    report.compliant += 1
                else:
                    report.noncompliant += 1
                    report.noncompliant_users.append(member.user_id)
            except Exception as e:
                report.errors += 1
                log.error(f"Recheck failed for {member.user_id} in chat {chat_id}: {e}")

        await self._gather_bounded(members, check)
        report.noncompliant_users.sort()
        return report

    async def enforce(self, chat_id: int) -> SweepReport:
        """
        Apply the live policy to every tracked member, ending grandfathering.

        Members who already left are dropped. Administrators and the creator
        are never evaluated, restricted or removed. Every evaluated member
        gets the live policy hash, pass or fail. A member whose check
        errors keeps its old state and hash.
        """
        policy = self._current_policy(chat_id)
        action = policy.on_fail if policy else OnFail.KICK
        current_hash = policy_hash(policy)
        members = self.store.list_members(chat_id)
        report = SweepReport(chat_id=chat_id)

        async def check(member: Member):
            try:
                status = await self._call(self.chat.get_member_status(chat_id, member.user_id))
                if status in GONE_STATUSES:
                    self.store.delete_member(chat_id, member.user_id)
                    report.removed_left += 1
                    return
                if status in ADMIN_STATUSES:
                    report.skipped_admins += 1
                    return

                report.checked += 1
                was_grandfathered = is_grandfathered(member.policy_hash, current_hash)
                outcome = await self._evaluate(member, policy)
                member.last_checked_at = self.clock()
                if outcome.passed:
                    report.compliant += 1
                    if was_grandfathered:
                        report.grandfathered_updated += 1
                else:
                    await self._apply_on_fail(member, action, outcome, report, notify=True)
                member.policy_hash = current_hash
                self.store.upsert_member(member)
            except Exception as e:
                report.errors += 1
                log.error(f"Enforce failed for {member.user_id} in chat {chat_id}: {e}")

        with self.store.batch():
            await self._gather_bounded(members, check)
            self._audit(chat_id, "enforced", policy_hash=current_hash, **{
                k: v for k, v in report.to_dict().items() if k != "chat_id"})
        log.info(f"Enforce chat {chat_id}: {report.to_dict()}")
        return report

    # -------------------------------------------------------------------------
    # join request expiry
    # -------------------------------------------------------------------------

    async def expire_join_requests(self, now: Optional[float] = None) -> CleanupReport:
        """
        Expire pending join requests past their deadline (decline on the
        platform, drop the pending member) and purge terminal requests
        processed more than the retention period ago.
        """
        now = self.clock() if now is None else now
        report = CleanupReport()

        with self.store.batch():
            for request in self.store.list_join_requests(JoinRequestStatus.PENDING):
                if not request.is_expired(now):
                    continue
                try:
                    await self._resolve_join_request(self.chat.decline, request.chat_id,
                                                     request.user_id)
                except Exception as e:
                    report.errors += 1
                    log.error(f"Failed to decline expired request "
                              f"{request.chat_id}/{request.user_id}: {e}")
                    continue
                request.status = JoinRequestStatus.EXPIRED
                request.processed_at = now
                self.store.upsert_join_request(request)
                member = self.store.get_member(request.chat_id, request.user_id)
                if member is not None and member.state == MemberState.PENDING:
                    self.store.delete_member(request.chat_id, request.user_id)
                self._audit(request.chat_id, "declined", request.user_id,
                            reason="expired_after_48h")
                report.expired += 1

            cutoff = now - self.join_request_retention
            stale = [
                r.key for r in self.store.list_join_requests()
                if r.is_terminal() and r.processed_at is not None and r.processed_at < cutoff
            ]
            report.purged = self.store.delete_join_requests(stale)
            report.attestations_purged = self.store.purge_attestations(now)
        if report.expired or report.purged:
            log.info(f"Join request cleanup: {report.to_dict()}")
        return report

    def pending_requests_for(self, user_id: int, now: Optional[float] = None) -> List[JoinRequest]:
        """Open, unexpired join requests of one user (across chats)."""
        now = self.clock() if now is None else now
        return [r for r in self.store.list_join_requests(JoinRequestStatus.PENDING, user_id=user_id)
                if not r.is_expired(now)]

    def status(self) -> Dict[str, int]:
        return self.store.stats()
