from .record import EnrollmentRecord
from .store import LocalStore

__all__ = ["EnrollmentRecord", "LocalStore"]
