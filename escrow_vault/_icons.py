"""
Console-safe icon map
======================
Legacy consoles (cp1252) cannot render emoji.
This module detects the encoding and falls back to ASCII.
"""

from __future__ import annotations

import os
import sys

def _can_render_emoji() -> bool:
    """Return True if stdout can handle emoji characters."""
    if os.environ.get("PYTHONIOENCODING", "").lower().startswith("utf"):
        return True
    encoding = getattr(sys.stdout, "encoding", None) or ""
    return encoding.lower().replace("-", "") in ("utf8", "utf16", "utf32")


_EMOJI = _can_render_emoji()

# ---- Alert severities ----
ICON_CRITICAL   = "\U0001f534" if _EMOJI else "[!!]"
ICON_WARNING    = "\U0001f7e0" if _EMOJI else "[!]"
ICON_INFO       = "\u2139\ufe0f" if _EMOJI else "[ii]"
ICON_SUCCESS    = "\u2705" if _EMOJI else "[OK]"

# ---- Liquidity / health dots ----
ICON_HEALTHY    = "\U0001f7e2" if _EMOJI else "[+]"
ICON_WATCH      = "\U0001f7e1" if _EMOJI else "[-]"
ICON_RISK       = "\U0001f6a8" if _EMOJI else "[X]"
ICON_NEUTRAL    = "\u26aa" if _EMOJI else "[.]"

# ---- Misc ----
ICON_CHECK      = "\u2713"     if _EMOJI else "[v]"
ICON_CROSS      = "\u2717"     if _EMOJI else "[x]"
ICON_WARN       = "\u26a0\ufe0f" if _EMOJI else "[!]"

# ---- Lookup helpers ----

SEVERITY_ICONS: dict[str, str] = {
    "critical": ICON_CRITICAL,
    "warning": ICON_WARNING,
    "info": ICON_INFO,
    "success": ICON_SUCCESS,
}

LIQUIDITY_ICONS: dict[str, str] = {
    "healthy": ICON_HEALTHY,
    "watch": ICON_WATCH,
    "risk": ICON_RISK,
}

HEALTH_ICONS: dict[str, str] = {
    "healthy": ICON_HEALTHY,
    "watch": ICON_WATCH,
    "danger": ICON_RISK,
    "neutral": ICON_NEUTRAL,
}
