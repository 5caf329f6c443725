from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from . import MATERIALS_PATH
from .registry import RegistryError, load_json

logger = logging.getLogger(__name__)

ROOM_PAIR_SEPARATORS = "،؛,;"
LIST_SEPARATORS = ",،"
_PARENTHESIZED = re.compile(r"\(([^)]*)\)")
_SPACES = re.compile(r"\s+")
MIN_REVERSE_MATCH = 3


@dataclass(frozen=True)
class MaterialVocabulary:
    rooms: dict[str, str]
    combined_rooms: dict[str, tuple[str, ...]]
    flooring: dict[str, str]
    walls: dict[str, str]
    exterior_areas: dict[str, str]
    exterior: dict[str, str]

    def table(self, kind: str) -> dict[str, str]:
        if kind == "flooring":
            return self.flooring
        if kind == "walls":
            return self.walls
        if kind == "exterior":
            return self.exterior
        raise ValueError(f"Unknown material kind: {kind}")


@dataclass
class MaterialParse:
    """Result of reading one free-text materials field."""

    rooms: dict[str, str] = field(default_factory=dict)
    general: list[str] = field(default_factory=list)
    room_by_room: bool = False
    mixed: bool = False
    unknown_rooms: list[str] = field(default_factory=list)


def _lowered(table: dict[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in table.items()}


@lru_cache(maxsize=None)
def load_vocabulary(path: str = MATERIALS_PATH) -> MaterialVocabulary:
    data = load_json(path)
    try:
        return MaterialVocabulary(
            rooms=_lowered(data["rooms"]),
            combined_rooms={
                name: tuple(members) for name, members in data.get("combined_rooms", {}).items()
            },
            flooring=_lowered(data["flooring"]),
            walls=_lowered(data["walls"]),
            exterior_areas=_lowered(data["exterior_areas"]),
            exterior=_lowered(data["exterior"]),
        )
    except KeyError as exc:
        raise RegistryError(f"{path} is missing the {exc} table") from exc


def clean(text: str) -> str:
    return _SPACES.sub(" ", text).strip()


def split_outside_parentheses(text: str, separators: str = LIST_SEPARATORS) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        if char in separators and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [clean(part) for part in parts if clean(part)]


def lookup(term: str, table: dict[str, str]) -> str | None:
    """Exact match first, then the longest key contained in ``term``."""

    key = clean(term).lower()
    if not key:
        return None
    if key in table:
        return table[key]
    for candidate in sorted(table, key=len, reverse=True):
        if candidate in key:
            return table[candidate]
    for candidate in sorted(table, key=len, reverse=True):
        if len(key) >= MIN_REVERSE_MATCH and key in candidate:
            return table[candidate]
    return None


def expand_room(room: str, vocabulary: MaterialVocabulary) -> tuple[str, ...]:
    return vocabulary.combined_rooms.get(room, (room,))


def _strip_annotations(text: str) -> str:
    return clean(_PARENTHESIZED.sub(" ", text))


def _assign_rooms(
    annotation: str,
    material: str,
    vocabulary: MaterialVocabulary,
    result: MaterialParse,
) -> None:
    for room_text in split_outside_parentheses(annotation, ROOM_PAIR_SEPARATORS):
        room = lookup(room_text, vocabulary.rooms)
        if room is None:
            result.unknown_rooms.append(room_text)
            continue
        for member in expand_room(room, vocabulary):
            result.rooms.setdefault(member, material)


def _parse_annotated_item(
    item: str, table: dict[str, str], vocabulary: MaterialVocabulary, result: MaterialParse
) -> None:
    base = _strip_annotations(item)
    if not base:
        return
    material = lookup(base, table) or base.lower()
    if material not in result.general:
        result.general.append(material)
    for annotation in _PARENTHESIZED.findall(item):
        _assign_rooms(annotation, material, vocabulary, result)


def parse_materials(text: str, kind: str, vocabulary: MaterialVocabulary | None = None) -> MaterialParse:
    """Read a floor or wall materials field.

    ``نوم: باركيه، حمام: سيراميك`` is read room by room. ``سيراميك (نوم), رخام`` is read
    as a list whose parenthesised rooms also receive the material. A field mixing both
    styles is read room by room and flagged as mixed.
    """

    vocabulary = vocabulary or load_vocabulary()
    table = vocabulary.table(kind)
    result = MaterialParse()
    text = clean(text or "")
    if not text:
        return result

    if ":" in text:
        result.room_by_room = True
        result.mixed = "(" in text
        for segment in split_outside_parentheses(text, ROOM_PAIR_SEPARATORS):
            if ":" not in segment:
                if "(" in segment:
                    _parse_annotated_item(segment, table, vocabulary, result)
                continue
            room_text, material_text = (part.strip() for part in segment.split(":", 1))
            room = lookup(room_text, vocabulary.rooms)
            material_text = _strip_annotations(material_text)
            if room is None:
                result.unknown_rooms.append(room_text)
                continue
            material = lookup(material_text, table) if material_text else None
            if material is None:
                continue
            for member in expand_room(room, vocabulary):
                result.rooms[member] = material
            if material not in result.general:
                result.general.append(material)
        return result

    for item in split_outside_parentheses(text, LIST_SEPARATORS):
        _parse_annotated_item(item, table, vocabulary, result)
    return result


def parse_exterior(
    text: str, vocabulary: MaterialVocabulary | None = None
) -> tuple[dict[str, str], list[str]]:
    """Return (area -> material, general material list) for an exterior finishes field."""

    vocabulary = vocabulary or load_vocabulary()
    text = clean(text or "")
    areas: dict[str, str] = {}
    general: list[str] = []
    if not text:
        return areas, general
    if ":" in text:
        for segment in split_outside_parentheses(text, ROOM_PAIR_SEPARATORS):
            if ":" not in segment:
                continue
            area_text, material_text = (part.strip() for part in segment.split(":", 1))
            area = lookup(area_text, vocabulary.exterior_areas)
            material = lookup(material_text, vocabulary.exterior)
            if area and material:
                areas[area] = material
        return areas, general
    for item in split_outside_parentheses(text, LIST_SEPARATORS):
        material = lookup(_strip_annotations(item), vocabulary.exterior) or item.lower()
        if material not in general:
            general.append(material)
    return areas, general
