"""
Core service singletons.

WHAT: One shared instance of each core component
WHY: The HTTP layer and the scheduler must see the same locks
HOW: Module-level instances wired together; no threads start at import
"""

from .resource_ledger import ResourceLedger
from .negotiation_service import NegotiationStateMachine
from .qr_session_service import QRSessionProtocol
from .rate_governor import RateGovernor
from .maintenance import MaintenanceScheduler

resource_ledger = ResourceLedger()
negotiation_service = NegotiationStateMachine(resource_ledger)
qr_session_service = QRSessionProtocol(negotiation_service)
rate_governor = RateGovernor()
maintenance_scheduler = MaintenanceScheduler(
    resource_ledger,
    negotiation_service,
    qr_session_service,
    rate_governor,
)

__all__ = [
    "ResourceLedger",
    "NegotiationStateMachine",
    "QRSessionProtocol",
    "RateGovernor",
    "MaintenanceScheduler",
    "resource_ledger",
    "negotiation_service",
    "qr_session_service",
    "rate_governor",
    "maintenance_scheduler",
]
