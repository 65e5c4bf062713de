"""Domain enumerations for the pre-market access platform.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Role carried by an authenticated caller."""

    AGENT = "agent"
    ADMIN = "admin"
    RENTER = "renter"


class AccessStatus(str, Enum):
    """Status of one agent's access to one pre-market request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FREE = "free"
    PAID = "paid"


class PaymentStatus(str, Enum):
    """Status of the payment attached to an access record."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AdminAction(str, Enum):
    """Decision an admin can take on an access record."""

    APPROVE = "approve"
    CHARGE = "charge"
    REJECT = "reject"


class AccessType(str, Enum):
    """How an agent came to see (or not see) renter details."""

    ADMIN_GRANTED = "admin-granted"
    FREE = "free"
    PAID = "paid"
    NONE = "none"


class ListingStatus(str, Enum):
    """Listing status as presented to a particular agent."""

    AVAILABLE = "available"
    REQUESTED = "requested"
    MATCHED = "matched"
    REJECTED = "rejected"


class Visibility(str, Enum):
    """Which agents may see a pre-market request at all."""

    PRIVATE = "PRIVATE"
    SHARED = "SHARED"


class AccessActor(str, Enum):
    """Who caused an access record transition."""

    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"
    PAYMENT_GATEWAY = "payment_gateway"


class AccessEventType(str, Enum):
    """Audit event types recorded against an access record."""

    ACCESS_REQUESTED = "access_requested"
    ADMIN_APPROVED_FREE = "admin_approved_free"
    ADMIN_CHARGED = "admin_charged"
    ADMIN_REJECTED = "admin_rejected"
    MATCHED = "matched"
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
