"""
Lifecycle notification slots.

The client invokes whichever slots are populated, synchronously, right after
the corresponding step.  Notifications accompany error propagation; they
never replace it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class Notifications:
    on_init: Optional[Callable[[Any], None]] = None                       # (Account)
    on_error: Optional[Callable[[Exception], None]] = None                # (error)
    on_certificate_error: Optional[Callable[[str, Exception], None]] = None  # (label, error)
    on_certificate_updated: Optional[Callable[[Any], None]] = None        # (CertificateRecord)

    def notify(self, slot: str, *args: Any) -> None:
        callback = getattr(self, slot)
        if callback is not None:
            callback(*args)
