from app.models.activity import ActivityLog
from app.models.clip import Clip
from app.models.credit import CreditAccount, CreditTransaction, TransactionType
from app.models.error_record import ErrorRecord
from app.models.job import Job, JobStatus

__all__ = [
    "ActivityLog",
    "Clip",
    "CreditAccount",
    "CreditTransaction",
    "ErrorRecord",
    "Job",
    "JobStatus",
    "TransactionType",
]
