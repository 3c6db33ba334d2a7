from __future__ import annotations

CONFIRM_KEYWORDS = ("yes", "go ahead", "sí", "si", "dale", "sim", "oui", "ja")
CANCEL_KEYWORDS = ("no", "cancel", "cancelar", "annuler", "nein")


def _normalize(text: str) -> str:
    return " ".join(text.strip().lower().rstrip(".!").split())


def is_confirmation(text: str) -> bool:
    """True when the reply is a confirmation keyword, optionally followed by more words."""
    normalized = _normalize(text)
    for keyword in CONFIRM_KEYWORDS:
        if normalized == keyword:
            return True
        if normalized.startswith(keyword) and normalized[len(keyword)] in " ,":
            return True
    return False


def is_cancellation(text: str) -> bool:
    # Whole-reply match only: "no database needed" is an answer, not a cancel.
    return _normalize(text) in CANCEL_KEYWORDS
