"""Access decision engine: validates access transitions and derives the
agent-visible summary.

Everything here is pure. Persistence lives in grant_access_service,
request_visibility and payment_reconciliation.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from premarket_platform.domain.enums import (
    AccessActor,
    AccessStatus,
    AccessType,
    AdminAction,
    ListingStatus,
    PaymentStatus,
)
from premarket_platform.domain.errors import BadRequest, Conflict


class InvalidTransitionError(Conflict):
    """Raised when an access state transition is not allowed."""

    def __init__(
        self,
        current_status: AccessStatus,
        target_status: AccessStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = AccessStatus
A = AccessActor

TRANSITION_MAP: dict[AccessStatus, dict[AccessStatus, set[AccessActor]]] = {
    S.PENDING: {
        S.APPROVED: {A.ADMIN},
        S.REJECTED: {A.ADMIN},
        S.FREE: {A.ADMIN, A.AGENT},
    },
    S.APPROVED: {
        S.PAID: {A.PAYMENT_GATEWAY},
        S.FREE: {A.ADMIN, A.AGENT},
        S.REJECTED: {A.ADMIN},
    },
}

TERMINAL_STATES: set[AccessStatus] = {S.REJECTED, S.FREE, S.PAID}

# States in which the agent may see renter PII
GRANTED_STATES: set[AccessStatus] = {S.FREE, S.PAID}

# States in which an access request is still being worked on
IN_FLIGHT_STATES: set[AccessStatus] = {S.PENDING, S.APPROVED}

AVAILABLE = "Available"


def _status(value) -> AccessStatus:
    return value if isinstance(value, AccessStatus) else AccessStatus(value)


class AccessStateMachine:
    """Validates access record transitions.

    Admins may override any state, including terminal ones. Everyone else
    follows TRANSITION_MAP.
    """

    def validate_transition(
        self,
        current_status: AccessStatus,
        target_status: AccessStatus,
        actor: AccessActor,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        current_status = _status(current_status)
        target_status = _status(target_status)

        if actor == A.ADMIN:
            return True

        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from terminal state {current_status.value}",
            )

        allowed_targets = TRANSITION_MAP[current_status]

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        return True


# ---------------------------------------------------------------------------
# Agent request rules
# ---------------------------------------------------------------------------


def check_existing_access(record) -> None:
    """Apply the request-access rules to an existing record.

    Returns silently when the existing record should be handed back as-is
    (pending or approved). Raises Conflict when the agent already has access
    or was rejected.
    """
    status = _status(record.status)
    if status in IN_FLIGHT_STATES:
        return
    if status in GRANTED_STATES:
        raise Conflict("You already have access to this pre-market request")
    if status == S.REJECTED:
        raise Conflict(
            "Your access request for this property was rejected. "
            "Please contact support."
        )


# ---------------------------------------------------------------------------
# Admin decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdminResolution:
    """What an admin action does to an access record."""

    target_status: AccessStatus
    is_free: bool
    charge_amount: Optional[Decimal]

    @property
    def creates_charge(self) -> bool:
        return self.target_status == S.APPROVED and self.charge_amount is not None


def _positive_amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise BadRequest("Invalid charge amount")
    if not amount.is_finite():
        raise BadRequest("Invalid charge amount")
    return amount.quantize(Decimal("0.01")) if amount > 0 else None


def resolve_admin_decision(
    action: AdminAction | str,
    is_free: bool | None = None,
    charge_amount=None,
) -> AdminResolution:
    """Resolve an admin action into the target state.

    approve: free when is_free or no positive charge, otherwise approved with a charge.
    charge: approved with charge_amount, which must be positive.
    reject: rejected.
    """
    try:
        action = action if isinstance(action, AdminAction) else AdminAction(action)
    except ValueError:
        raise BadRequest("Invalid decision action")

    if action == AdminAction.REJECT:
        return AdminResolution(target_status=S.REJECTED, is_free=False, charge_amount=None)

    if action == AdminAction.CHARGE:
        amount = _positive_amount(charge_amount)
        if amount is None:
            raise BadRequest("Invalid charge amount")
        return AdminResolution(target_status=S.APPROVED, is_free=False, charge_amount=amount)

    amount = None if is_free else _positive_amount(charge_amount)
    if amount is None:
        return AdminResolution(target_status=S.FREE, is_free=True, charge_amount=None)
    return AdminResolution(target_status=S.APPROVED, is_free=False, charge_amount=amount)


# ---------------------------------------------------------------------------
# Agent-visible summary
# ---------------------------------------------------------------------------


@dataclass
class AccessSummary:
    """Derived view of one agent's access to one request."""

    grant_access_status: str
    access_type: str
    can_request_access: bool
    can_see_renter_info: bool
    listing_status: str
    charge_amount: Optional[float] = None
    payment: Optional[dict] = None
    grant_access_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _num(val) -> Optional[float]:
    if val is None:
        return None
    return float(val)


def _has_charge(record) -> bool:
    if record.is_free:
        return False
    amount = record.charge_amount
    return amount is not None and Decimal(str(amount)) > 0


def _payment_view(record) -> Optional[dict]:
    if record.payment_status is None:
        return None
    return {
        "amount": _num(record.payment_amount),
        "currency": record.payment_currency,
        "status": record.payment_status,
        "failure_count": record.payment_failure_count or 0,
        "intent_id": record.stripe_payment_intent_id,
    }


def derive_access_summary(record, has_grant_access: bool) -> AccessSummary:
    """Compute what an agent may see for a request.

    ``record`` is the agent's access record for the request, or None.
    """
    record_id = record.id if record is not None else None

    if has_grant_access:
        return AccessSummary(
            grant_access_status=S.FREE.value,
            access_type=AccessType.ADMIN_GRANTED.value,
            can_request_access=False,
            can_see_renter_info=True,
            listing_status=ListingStatus.MATCHED.value,
            grant_access_id=record_id,
        )

    if record is None:
        return AccessSummary(
            grant_access_status=AVAILABLE,
            access_type=AccessType.NONE.value,
            can_request_access=True,
            can_see_renter_info=False,
            listing_status=ListingStatus.AVAILABLE.value,
        )

    status = _status(record.status)
    charge_amount = _num(record.charge_amount) if _has_charge(record) else None
    payment = _payment_view(record) if charge_amount is not None else None

    if status in GRANTED_STATES:
        access_type = AccessType.PAID if status == S.PAID else AccessType.FREE
        listing_status = ListingStatus.MATCHED
    elif status == S.REJECTED:
        access_type = AccessType.NONE
        listing_status = ListingStatus.REJECTED
    else:
        access_type = AccessType.NONE
        listing_status = ListingStatus.REQUESTED

    return AccessSummary(
        grant_access_status=status.value,
        access_type=access_type.value,
        can_request_access=False,
        can_see_renter_info=status in GRANTED_STATES,
        listing_status=listing_status.value,
        charge_amount=charge_amount,
        payment=payment,
        grant_access_id=record_id,
    )


def awaiting_payment_sync(record) -> bool:
    """True when a stored payment is still pending on an attached intent."""
    return (
        record is not None
        and _status(record.status) == S.APPROVED
        and record.payment_status == PaymentStatus.PENDING.value
        and bool(record.stripe_payment_intent_id)
    )
