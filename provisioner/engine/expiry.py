"""Expiry checks for derived credentials."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..models import DerivedCredential, LifecycleState, utcnow

DEFAULT_THRESHOLD_DAYS = 30


class ExpiryStatus(Enum):
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"
    OK = "ok"
    NO_EXPIRY = "no_expiry"


@dataclass(frozen=True)
class ExpiryFinding:
    credential: DerivedCredential
    status: ExpiryStatus
    days_left: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'fingerprint': self.credential.fingerprint,
            'capabilities': self.credential.capabilities.letters if self.credential.capabilities else None,
            'expires_at': self.credential.expires_at.isoformat() if self.credential.expires_at else None,
            'status': self.status.value,
            'days_left': self.days_left,
        }


def check_expiry(credentials: Iterable[DerivedCredential],
                 threshold_days: int = DEFAULT_THRESHOLD_DAYS,
                 now: Optional[datetime] = None) -> List[ExpiryFinding]:
    """Classify every credential; revoked ones are left out."""
    now = now or utcnow()
    threshold = timedelta(days=threshold_days)
    findings = []
    for cred in credentials:
        if cred.state is LifecycleState.REVOKED:
            continue
        if cred.expires_at is None:
            findings.append(ExpiryFinding(cred, ExpiryStatus.NO_EXPIRY))
            continue
        remaining = cred.expires_at - now
        days_left = remaining.days
        if remaining <= timedelta(0) or cred.state is LifecycleState.EXPIRED:
            status = ExpiryStatus.EXPIRED
        elif remaining <= threshold:
            status = ExpiryStatus.EXPIRING_SOON
        else:
            status = ExpiryStatus.OK
        findings.append(ExpiryFinding(cred, status, days_left))
    return findings
