from donations.services.approval_reconciler import (
    ApprovalTransition,
    InvalidTransitionError,
    ReconciliationError,
    apply_approval_transition,
    recompute_case_amounts,
)
from donations.services.contribution_csv import CsvFormatError, RowValidationError, aggregate_contributions
from donations.services.contribution_import import ContributionImportRunner, ImportSummary
from donations.services.contribution_notifications import ContributionNotificationDispatcher, NotificationError
from donations.services.contribution_writer import ContributionWriter, ImportAbortedError
from donations.services.identity_provider import IdentityProviderClient, IdentityProviderError
from donations.services.identity_provisioning import (
    DirectoryUnavailableError,
    IdentityProvisioner,
    ProvisioningError,
)

__all__ = [
	"ApprovalTransition",
	"ContributionImportRunner",
	"ContributionNotificationDispatcher",
	"ContributionWriter",
	"CsvFormatError",
	"DirectoryUnavailableError",
	"IdentityProviderClient",
	"IdentityProviderError",
	"IdentityProvisioner",
	"ImportAbortedError",
	"ImportSummary",
	"InvalidTransitionError",
	"NotificationError",
	"ProvisioningError",
	"ReconciliationError",
	"RowValidationError",
	"aggregate_contributions",
	"apply_approval_transition",
	"recompute_case_amounts",
]
