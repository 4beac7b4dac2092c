from loyalty_core.models.api_key import ApiKey
from loyalty_core.models.audit_log import AuditLog
from loyalty_core.models.failed_job import FailedJob
from loyalty_core.models.ledger_transaction import LedgerTransaction
from loyalty_core.models.member import Member
from loyalty_core.models.membership_account import MembershipAccount, PendingEntry
from loyalty_core.models.merchant import Location, Merchant, PayoutMilestone
from loyalty_core.models.payout_claim import PayoutClaim
from loyalty_core.models.settlement_event import SettlementEvent

__all__ = [
    "ApiKey",
    "AuditLog",
    "FailedJob",
    "LedgerTransaction",
    "Location",
    "Member",
    "MembershipAccount",
    "Merchant",
    "PayoutClaim",
    "PayoutMilestone",
    "PendingEntry",
    "SettlementEvent",
]
