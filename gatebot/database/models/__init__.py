from .key import VerificationKey
from .challenge import ChallengeRecord
from .verification import VerificationRecord

__all__ = ["VerificationKey", "ChallengeRecord", "VerificationRecord"]
