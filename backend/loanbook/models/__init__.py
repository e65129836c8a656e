"""SQLAlchemy models for the loan ledger."""

from loanbook.models.common import RecordStatus
from loanbook.models.bank import Bank
from loanbook.models.facility import Facility, FacilityType, CreditLine
from loanbook.models.collateral import Collateral, CollateralType, CollateralAssignment
from loanbook.models.loan import Loan, LoanStatus, InterestBasis
from loanbook.models.transaction import Transaction, TransactionType
from loanbook.models.audit import AuditLog
from loanbook.models.snapshot import PortfolioSnapshot

__all__ = [
    "RecordStatus",
    "Bank",
    "Facility",
    "FacilityType",
    "CreditLine",
    "Collateral",
    "CollateralType",
    "CollateralAssignment",
    "Loan",
    "LoanStatus",
    "InterestBasis",
    "Transaction",
    "TransactionType",
    "AuditLog",
    "PortfolioSnapshot",
]
