"""Heuristic maintenance-info extraction from free text.

Classifies sentence-like fragments into part numbers, repair procedures and
safety warnings by keyword families. Not a language model: false positives
are expected, but output is deterministic and bounded.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

MAX_PARTS = 10
MAX_PROCEDURES = 15
MAX_WARNINGS = 5

_FRAGMENT_SPLIT = re.compile(r"[.!?\n]")
_PART_MARKERS = ("part #", "part no", "part number", "ref:", "p/n")
_PART_CODE = re.compile(r"[A-Z0-9-]{4,}")
_PROCEDURE = re.compile(
    r"\b(replace|calibrate|unscrew|check voltage|solder|remove|install|check)\w*", re.IGNORECASE
)
_WARNING = re.compile(r"(warning|caution|danger|high voltage|hazard)", re.IGNORECASE)

_MANUFACTURER = re.compile(
    r"(?:Manufacturer|Mfg|Produced by|Brand|Company)[\s:]*([A-Z][A-Za-z0-9 &]{2,20})",
    re.IGNORECASE,
)
_MODEL = re.compile(r"(?:Model No|Model|Ref|Type|P/N)[\s:]*([A-Z0-9\-./]{3,20})", re.IGNORECASE)
_DEVICE_CATEGORIES = {
    "Imaging": re.compile(r"Ultrasound|X-Ray|\bCT\b|MRI|Scanner|Endoscope", re.IGNORECASE),
    "Life Support": re.compile(r"Ventilator|Anesthesia|Defibrillator|Dialysis", re.IGNORECASE),
    "Monitoring": re.compile(r"Patient Monitor|\bECG\b|\bEKG\b|Pulse Oximeter", re.IGNORECASE),
    "Laboratory": re.compile(r"Analyzer|Centrifuge|Microscope|Incubator", re.IGNORECASE),
    "Surgical": re.compile(r"Electrosurgical|Laser|C-Arm|Robotic", re.IGNORECASE),
}


@dataclass
class MaintenanceInfo:
    parts: list[str] = field(default_factory=list)
    procedures: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class DeviceIdentity:
    device_type: str = "Medical Equipment"
    manufacturer: str = "Generic/Other"
    model: str = "Unknown"


def extract_maintenance_info(content: str) -> MaintenanceInfo:
    """Pull part codes, procedures and warnings out of free text."""
    parts: list[str] = []
    procedures: list[str] = []
    warnings: list[str] = []

    for fragment in _FRAGMENT_SPLIT.split(content):
        text = fragment.strip()
        if not text:
            continue
        lowered = text.lower()

        if any(marker in lowered for marker in _PART_MARKERS):
            match = _PART_CODE.search(text)
            if match:
                parts.append(match.group(0))

        if _PROCEDURE.search(text):
            procedures.append(text)

        if _WARNING.search(text):
            warnings.append(text)

    return MaintenanceInfo(
        parts=_unique(parts)[:MAX_PARTS],
        procedures=_unique(procedures)[:MAX_PROCEDURES],
        warnings=_unique(warnings)[:MAX_WARNINGS],
    )


def guess_device_identity(text: str) -> DeviceIdentity:
    """Best-effort device triple from catalog or forum text."""
    identity = DeviceIdentity()

    match = _MANUFACTURER.search(text)
    if match:
        identity.manufacturer = match.group(1).strip()
    else:
        # First non-empty line of a catalog is usually the company
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if lines:
            identity.manufacturer = lines[0][:30]

    match = _MODEL.search(text)
    if match:
        identity.model = match.group(1).strip()

    for category, pattern in _DEVICE_CATEGORIES.items():
        if pattern.search(text):
            identity.device_type = category
            break

    return identity


def _unique(items: list[str]) -> list[str]:
    """Drop duplicates, keeping first occurrence order."""
    return list(dict.fromkeys(items))
