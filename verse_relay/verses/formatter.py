"""
verses/formatter.py — Verse text → OBS text-input settings.

Styling is tuned for a 1920x1080 canvas: bold white Arial with a 2px black
outline, no background, centered inside extents that cover the whole frame.
"""

from __future__ import annotations

from dataclasses import dataclass

LINE_WIDTH = 60
CANVAS_WIDTH = 1920
CANVAS_HEIGHT = 1080
FONT_SIZE = 48
READY_TEXT = "Bible Verse Ready"


@dataclass(frozen=True)
class Verse:
    reference: str
    text: str
    version: str = "kjv"


def wrap_text(text: str, width: int = LINE_WIDTH) -> str:
    """
    Greedily pack whitespace-separated words into lines of at most `width`
    characters. Words are never split, so a word longer than `width` sits on
    a line of its own.
    """
    lines: list[str] = []
    current = ""
    for word in text.split():
        if not current:
            current = word
        elif len(current) + 1 + len(word) <= width:
            current += " " + word
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return "\n".join(lines)


def _styled(text: str) -> dict:
    return {
        "text": text,
        "font": {
            "face": "Arial, sans-serif",
            "size": FONT_SIZE,
            "flags": 1,  # bold
            "color": 0xFFFFFF,
            "color2": 0x000000,
            "color3": 0x000000,
            "color4": 0x000000,
        },
        "align": "center",
        "valign": "center",
        "outline": True,
        "outline_size": 2,
        "outline_color": 0x000000,
        "background": False,
        "gradient": False,
        "use_extents": True,
        "extents_cx": CANVAS_WIDTH,
        "extents_cy": CANVAS_HEIGHT,
        "extents_wrap": True,
        "extents_align": "center",
    }


def format_verse(reference: str, text: str, version: str = "kjv") -> dict:
    """Build the SetInputSettings inputSettings payload for one verse."""
    return _styled(f"{reference}\n\n{wrap_text(text)}")


def display_setup_settings() -> dict:
    """Initial styling pushed once a session is READY."""
    return _styled(READY_TEXT)
