"""
TABPILOT — dialogue-driven orchestration for multi-step browser tasks.

Plan → route by confidence → (clarify | assume + announce | proceed)
→ refine → approve → execute → recover.
"""

from tabpilot.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
