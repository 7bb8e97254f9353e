"""
Calendar title parsing.

Turns one free-text appointment title into a ParsedTitle. Three shapes are
recognised, keyed on the chart-number anchor:

    standard   [StatusPrefix][ChartId]-[Name]-[Note]   e.g. "V0912345678-王小明-矯正"
    swapped    [Name]-[ChartId]-[Note]                 e.g. "王小明-0912345-矯正"
    no anchor  [Name]-[Note]                           e.g. "王小明-洗牙"

Titles whose name segment contains "+" are group/placeholder bookings and
are rejected (None).

``parse_source`` maps the free-text note of a prospect booking to its
marketing channel.
"""
from __future__ import annotations

import re
from typing import Optional

from packages.shared.keys import PROSPECT_SENTINEL
from packages.shared.models import ParsedTitle

_DIGIT_RUN = re.compile(r"\d+")

# Anchor lengths in priority order. 4 and 7 digits are historical chart
# number formats; 10 digits is a phone number used for unregistered patients.
ANCHOR_LENGTHS = (10, 7, 4)
PROSPECT_ANCHOR_LENGTH = 10


def find_anchor(title: str) -> Optional[re.Match]:
    """First maximal digit run of length 10, else 7, else 4."""
    runs = list(_DIGIT_RUN.finditer(title))
    for length in ANCHOR_LENGTHS:
        for run in runs:
            if len(run.group()) == length:
                return run
    return None


def _split_name_note(text: str) -> tuple[str, str]:
    name, _, note = text.partition("-")
    return name.strip(), note.strip()


def parse_title(title: Optional[str]) -> Optional[ParsedTitle]:
    text = title or ""
    anchor = find_anchor(text)
    status = ""

    if anchor is None:
        chart_id = PROSPECT_SENTINEL
        name, note = _split_name_note(text)
    else:
        chart_id = anchor.group()
        remainder = text[anchor.end():]
        if remainder.startswith("-"):
            remainder = remainder[1:]

        if anchor.start() > 0 and text[anchor.start() - 1] == "-":
            name = text[: anchor.start() - 1].strip()
            note = remainder.strip()
        else:
            status = text[: anchor.start()].strip()
            name, note = _split_name_note(remainder)

    if "+" in name:
        return None

    return ParsedTitle(
        chart_id=chart_id,
        patient_name=name,
        procedure_note=note,
        is_prospect=chart_id == PROSPECT_SENTINEL or len(chart_id) == PROSPECT_ANCHOR_LENGTH,
        status_prefix=status,
    )


# Marketing source keywords, checked in order; the first channel with a hit wins.
# "幫約" (booked by a friend) must be seen before the bare "幫" of the assistant.
SOURCE_KEYWORDS = (
    ("Line", ("line",)),
    ("FB", ("fb", "臉書", "ig")),
    ("官網", ("官網", "後台")),
    ("SOV轉介", ("轉",)),
    ("介紹", ("介紹", "朋友", "老婆", "媽媽", "男友", "幫約")),
    ("小幫手", ("小幫手", "幫")),
    ("電話", ("電", "tel")),
    ("過路客", ("現",)),
)
DEFAULT_SOURCE = "其他"


def parse_source(note: Optional[str]) -> str:
    """Guess how a prospect found the clinic from free-text booking notes."""
    text = (note or "").lower()
    for channel, keywords in SOURCE_KEYWORDS:
        if any(k in text for k in keywords):
            return channel
    return DEFAULT_SOURCE
