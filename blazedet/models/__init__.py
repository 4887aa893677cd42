"""blazedet model component exports."""

from __future__ import annotations

from . import utils

__all__ = ["utils"]
