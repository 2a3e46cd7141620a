# proposalai/utils.py

from typing import Optional
import re
from datetime import datetime, timedelta

def validate_email(email: str) -> bool:
    """Simple email format validator."""
    pattern = r"[^@\s]+@[^@\s]+\.[^@\s]+"
    return re.fullmatch(pattern, email or "") is not None

def add_days(dt: datetime, days: int) -> datetime:
    """Day-granularity offset; delay 0 means due immediately."""
    return dt + timedelta(days=days)

def whole_days_between(start: datetime, end: datetime) -> int:
    """Number of complete days elapsed from start to end (never negative)."""
    if end <= start:
        return 0
    return (end - start).days

def format_datetime(dt: Optional[datetime]) -> str:
    """Format datetime for log lines and operator output."""
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M")

def anonymize_email(email: str) -> str:
    """Return partially masked email address for logging."""
    if not email or "@" not in email:
        return email
    user, domain = email.split("@", 1)
    return user[:1] + "***@" + domain
