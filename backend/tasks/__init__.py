# tasks/__init__.py
from tasks.reaper import PaymentReaper, ReaperConfig

__all__ = ["PaymentReaper", "ReaperConfig"]
