"""verses — Verse value type and OBS text formatting."""
from .formatter import READY_TEXT, Verse, display_setup_settings, format_verse, wrap_text

__all__ = ["READY_TEXT", "Verse", "display_setup_settings", "format_verse", "wrap_text"]
