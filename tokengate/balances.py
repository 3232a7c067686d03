"""
tokengate - Balances

Counterparty balance rows, aggregation into atomic units, and a small
HTTP client for the Counterparty API.

Usage:
    client = CounterpartyClient("https://api.counterparty.io:4000/v2")
    rows = client.fetch_balance_rows(address, "XCP", include_unconfirmed=True)
    total, decimals = aggregate(rows)
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Tuple, Union

import requests

from .errors import BalanceAPIError

log = logging.getLogger(__name__)

DIVISIBLE_DECIMALS = 8
AMOUNT_RE = re.compile(r"^(\d*)(?:\.(\d*))?$")


@dataclass
class BalanceRow:
    """One row of a balance response, quantity in atomic units."""
    quantity: int
    divisible: bool = True
    asset: str = ""

    @classmethod
    def from_api(cls, row: dict) -> "BalanceRow":
        """
        Raises:
            BalanceAPIError: row is not an object or quantity is not an integer
        """
        if not isinstance(row, dict):
            raise BalanceAPIError(f"unexpected balance row: {row!r}")
        asset_info = row.get("asset_info") or {}
        if not isinstance(asset_info, dict):
            raise BalanceAPIError(f"unexpected asset_info: {asset_info!r}")
        try:
            quantity = int(row.get("quantity") or 0)
        except (TypeError, ValueError):
            raise BalanceAPIError(f"bad quantity in balance row: {row.get('quantity')!r}")
        return cls(
            quantity=quantity,
            divisible=bool(asset_info.get("divisible", True)),
            asset=row.get("asset", ""),
        )


def aggregate(rows: Iterable[BalanceRow]) -> Tuple[int, int]:
    """
    Sum balance rows.

    Returns:
        (atomic_total, decimals): decimals is 0 if any row is indivisible,
        otherwise 8 (also 8 for no rows)
    """
    total = 0
    indivisible = False
    for row in rows:
        total += row.quantity
        if not row.divisible:
            indivisible = True
    return total, 0 if indivisible else DIVISIBLE_DECIMALS


def to_atomic(amount: Union[str, int, Decimal], decimals: int) -> int:
    """
    Convert a decimal amount to atomic units.

    Extra fractional digits are truncated, never rounded up:
    to_atomic("0.123456789", 8) == 12345678
    """
    if isinstance(amount, Decimal):
        amount = format(amount, "f")
    text = str(amount).strip()
    match = AMOUNT_RE.match(text)
    if not match or text in ("", "."):
        raise ValueError(f"invalid amount: {amount!r}")
    whole, fraction = match.group(1) or "0", match.group(2) or ""
    fraction = fraction[:decimals].ljust(decimals, "0")
    return int(whole) * 10 ** decimals + (int(fraction) if fraction else 0)


def normalize_amount(amount: Union[str, int, Decimal]) -> str:
    """Canonical decimal string: '1.0' and '1' both become '1'."""
    try:
        value = Decimal(str(amount).strip())
    except ArithmeticError:
        raise ValueError(f"invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise ValueError(f"invalid amount: {amount!r}")
    return format(value.normalize(), "f")


# =============================================================================
# COUNTERPARTY CLIENT
# =============================================================================

class CounterpartyClient:
    """
    Read-only Counterparty API client.

    Calls are blocking; async callers run them in an executor.
    """

    def __init__(self, base_url: str = "https://api.counterparty.io:4000/v2",
                 timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def fetch_balance_rows(self, address: str, asset: str, verbose: bool = True,
                           include_unconfirmed: bool = False) -> List[BalanceRow]:
        """
        Balances of one asset held by address.

        Raises:
            BalanceAPIError: connection failure, non-success status or malformed payload
        """
        url = f"{self.base_url}/addresses/{address}/balances/{asset}"
        params = {
            "verbose": "1" if verbose else "0",
            "show_unconfirmed": "1" if include_unconfirmed else "0",
        }
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise BalanceAPIError(f"Connection failed: {e}")

        if not response.ok:
            raise BalanceAPIError(f"Balance API error {response.status_code}", response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise BalanceAPIError("Balance API returned invalid JSON", response.status_code)

        if not isinstance(data, dict):
            raise BalanceAPIError("Balance API returned an unexpected payload", response.status_code)
        result = data.get("result") or []
        if isinstance(result, dict):
            result = [result]
        if not isinstance(result, list):
            raise BalanceAPIError("Balance API result is not a list", response.status_code)
        rows = [BalanceRow.from_api(row) for row in result]
        log.debug(f"{address} holds {len(rows)} {asset} row(s)")
        return rows

    def __call__(self, address: str, asset: str, verbose: bool = True,
                 include_unconfirmed: bool = False) -> List[BalanceRow]:
        return self.fetch_balance_rows(address, asset, verbose, include_unconfirmed)
