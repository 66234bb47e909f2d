"""Teacher service: staff records."""

from .commands import create_teacher, delete_teacher
from .handlers import subscribe
from .model import Teacher
from .translators import translator

__all__ = ["Teacher", "create_teacher", "delete_teacher", "subscribe", "translator"]
