"""
Caveats and the caveat registry.

A caveat is a single predicate `condition <comparator> value` carried as a
first-party macaroon caveat. Tokens may only gain caveats, and every caveat
must hold for a request to be authorized.

Verification is fail-closed:
- a condition with no registered verifier is violated (UNKNOWN_CAVEAT)
- a verifier that raises counts as violated
- all caveats are evaluated; any violation denies

Built-in verifiers:
- time:        valid until settled_at + amount_paid * value seconds. Computed
               from the live invoice on every check, so a token minted before
               settlement becomes usable as soon as the invoice is paid.
- expiration:  absolute unix timestamp bound, `expiration<T`. Lets holders
               attenuate their own tokens.
- ip:          must equal the resolved client origin (optional).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .context import RequestContext, resolve_origin
from .errors import (
    LSAT_E_CAVEAT_VIOLATED,
    LSAT_E_INVOICE_UNSETTLED,
    LSAT_E_MALFORMED_TOKEN,
    LSAT_E_UNKNOWN_CAVEAT,
    LSATError,
    lsat_error,
)
from .identifier import Identifier
from .invoices import Invoice

logger = logging.getLogger("lsat_gateway.caveats")

TIME_CONDITION = "time"
EXPIRATION_CONDITION = "expiration"
ORIGIN_CONDITION = "ip"


class Comparator(Enum):
    EQ = "="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="


_CAVEAT_RE = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*(<=|>=|=|<|>)\s*(.*?)\s*$", re.DOTALL)


@dataclass(frozen=True)
class Caveat:
    condition: str
    value: str
    comparator: Comparator = Comparator.EQ

    def encode(self) -> str:
        return f"{self.condition}{self.comparator.value}{self.value}"

    @classmethod
    def decode(cls, text: str) -> "Caveat":
        m = _CAVEAT_RE.match(text or "")
        if not m:
            raise lsat_error(LSAT_E_MALFORMED_TOKEN, "caveat is not of the form <condition><op><value>", caveat=text)
        condition, op, value = m.groups()
        return cls(condition=condition, value=value, comparator=Comparator(op))

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True)
class CaveatResult:
    """Outcome of checking one caveat."""

    satisfied: bool
    code: str = ""
    reason: str = ""

    @classmethod
    def ok(cls) -> "CaveatResult":
        return cls(satisfied=True)

    @classmethod
    def violated(cls, reason: str, code: str = LSAT_E_CAVEAT_VIOLATED) -> "CaveatResult":
        return cls(satisfied=False, code=code, reason=reason)


@dataclass(frozen=True)
class VerificationContext:
    """Facts a verifier may read. Verifiers must not mutate it.

    caveats: the full chain presented with the token, including caveats the
    holder appended, so a verifier can compare against earlier caveats of the
    same condition.
    """

    now: datetime
    invoice: Invoice
    identifier: Identifier
    request: RequestContext = field(default_factory=RequestContext)
    caveats: Tuple[Caveat, ...] = ()


Verifier = Callable[[Caveat, VerificationContext], Union[CaveatResult, bool]]


class CaveatRegistry:
    """
    Mapping from caveat condition to verifier.

    The registry is configured at startup and then frozen; verification only
    reads it.
    """

    def __init__(self):
        self._verifiers: Dict[str, Verifier] = {}
        self._frozen = False

    def register(self, condition: str, verifier: Verifier, *, replace: bool = False) -> None:
        if self._frozen:
            raise RuntimeError("caveat registry is frozen")
        if condition in self._verifiers and not replace:
            raise ValueError(f"verifier already registered for {condition!r}")
        self._verifiers[condition] = verifier

    def freeze(self) -> "CaveatRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def conditions(self) -> List[str]:
        return sorted(self._verifiers)

    def __contains__(self, condition: str) -> bool:
        return condition in self._verifiers

    def verify(self, caveat: Caveat, ctx: VerificationContext) -> CaveatResult:
        verifier = self._verifiers.get(caveat.condition)
        if verifier is None:
            return CaveatResult.violated(f"no verifier for caveat {caveat.condition!r}", code=LSAT_E_UNKNOWN_CAVEAT)
        try:
            result = verifier(caveat, ctx)
        except LSATError as e:
            return CaveatResult.violated(e.message, code=e.code)
        except Exception as e:
            logger.warning("caveat verifier for %r raised %s: %s", caveat.condition, type(e).__name__, e)
            return CaveatResult.violated(f"verifier error for {caveat.condition!r}")
        if isinstance(result, CaveatResult):
            return result
        if result is True:
            return CaveatResult.ok()
        return CaveatResult.violated(f"caveat not satisfied: {caveat.encode()}")

    def verify_all(self, caveats: Iterable[Caveat], ctx: VerificationContext) -> List[CaveatResult]:
        return [self.verify(c, ctx) for c in caveats]

    def first_violation(self, caveats: Iterable[Caveat], ctx: VerificationContext) -> Optional[CaveatResult]:
        """Check every caveat; return the first violation or None."""
        violations = [r for r in self.verify_all(caveats, ctx) if not r.satisfied]
        return violations[0] if violations else None


# ---------------------------
# Time caveat
# ---------------------------

def time_caveat(seconds_per_unit: int) -> Caveat:
    """Caveat granting `seconds_per_unit` seconds of access per unit paid."""
    if int(seconds_per_unit) < 0:
        raise ValueError("seconds_per_unit must be non-negative")
    return Caveat(TIME_CONDITION, str(int(seconds_per_unit)))


def valid_until(invoice: Invoice, seconds_per_unit: int) -> Optional[datetime]:
    """End of the access window for a settled invoice; None if unsettled."""
    if not invoice.is_settled:
        return None
    start = invoice.settled_at or invoice.created_at
    paid = invoice.amount_paid if invoice.amount_paid is not None else invoice.amount_requested
    return start + timedelta(seconds=int(paid) * int(seconds_per_unit))


def verify_time(caveat: Caveat, ctx: VerificationContext) -> CaveatResult:
    if caveat.comparator is not Comparator.EQ:
        return CaveatResult.violated("time caveat must use '='")
    try:
        rate = int(caveat.value)
    except ValueError:
        return CaveatResult.violated(f"invalid time caveat value {caveat.value!r}")
    if rate < 0:
        return CaveatResult.violated("time caveat rate is negative")
    until = valid_until(ctx.invoice, rate)
    if until is None:
        return CaveatResult.violated("invoice not settled", code=LSAT_E_INVOICE_UNSETTLED)
    if ctx.now > until:
        return CaveatResult.violated(f"access window ended at {until.isoformat()}")
    return CaveatResult.ok()


# ---------------------------
# Expiration caveat
# ---------------------------

def expiration_caveat(expires_at: datetime) -> Caveat:
    return Caveat(EXPIRATION_CONDITION, str(int(expires_at.timestamp())), Comparator.LT)


def verify_expiration(caveat: Caveat, ctx: VerificationContext) -> CaveatResult:
    try:
        bound = datetime.fromtimestamp(float(caveat.value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return CaveatResult.violated(f"invalid expiration {caveat.value!r}")
    if caveat.comparator is Comparator.LT:
        ok = ctx.now < bound
    elif caveat.comparator is Comparator.LTE:
        ok = ctx.now <= bound
    else:
        return CaveatResult.violated("expiration caveat must use '<' or '<='")
    if not ok:
        return CaveatResult.violated(f"token expired at {bound.isoformat()}")
    return CaveatResult.ok()


# ---------------------------
# Origin caveat
# ---------------------------

def origin_caveat(request: RequestContext) -> Caveat:
    """Bind a token to the origin of the request it was minted for."""
    return Caveat(ORIGIN_CONDITION, resolve_origin(request))


def verify_origin(caveat: Caveat, ctx: VerificationContext) -> CaveatResult:
    if caveat.comparator is not Comparator.EQ:
        return CaveatResult.violated("ip caveat must use '='")
    origin = resolve_origin(ctx.request)
    if origin != caveat.value:
        return CaveatResult.violated(f"origin {origin} does not match token origin")
    return CaveatResult.ok()


def default_registry(*, include_origin: bool = False) -> CaveatRegistry:
    """Registry with the built-in verifiers (unfrozen, so callers can add more)."""
    reg = CaveatRegistry()
    reg.register(TIME_CONDITION, verify_time)
    reg.register(EXPIRATION_CONDITION, verify_expiration)
    if include_origin:
        reg.register(ORIGIN_CONDITION, verify_origin)
    return reg
