"""FormTier request-level gating"""

from .capability_gating import require_capability, raise_for_denial, status_code_for

__all__ = ["require_capability", "raise_for_denial", "status_code_for"]
