"""Student service: enrollment and parent contacts."""

from .commands import assign_class, create_student, delete_student
from .events import ParentContact
from .handlers import subscribe
from .model import Student
from .translators import translator

__all__ = [
    "ParentContact",
    "Student",
    "assign_class",
    "create_student",
    "delete_student",
    "subscribe",
    "translator",
]
