"""
Field mapping between file headers and entity fields.

A mapping target is written ``"<entity>.<field>"`` (for example
``"region.region_price"``). Targets without a prefix belong to the import's
default entity type. Mappings can be supplied explicitly or suggested from
the headers by matching them against each entity's display names.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from price_import.domain.imports.entities import (
    DEPENDENT_ENTITY_TYPES,
    PRIMARY_ENTITY_TYPE,
    EntityType,
    entity_class_for,
    parse_entity_type,
)
from price_import.domain.imports.errors import MappingValidationError, UnsupportedEntityTypeError

logger = logging.getLogger(__name__)

CONTAINMENT_SCORE = 10
WORD_MATCH_SCORE = 2
MIN_WORD_LENGTH = 3
SUGGESTION_THRESHOLD = 3


def split_target(target: str, default_type: EntityType) -> Tuple[EntityType, str]:
    """Split ``"entity.field"`` into its entity type and field name."""
    if "." in target:
        prefix, field_name = target.split(".", 1)
        return parse_entity_type(prefix), field_name.strip()
    return default_type, target.strip()


@dataclass
class FieldMapping:
    """
    Header -> target mapping for one import.

    ``params`` holds per-target transformer params (``"region.region_price":
    "decimal=,"``) that override the field defaults.
    """

    entries: Dict[str, str] = field(default_factory=dict)
    default_type: EntityType = PRIMARY_ENTITY_TYPE
    params: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        entries: Optional[Dict[str, str]],
        default_type: Any = PRIMARY_ENTITY_TYPE,
        params: Optional[Dict[str, str]] = None,
    ) -> "FieldMapping":
        cleaned = {
            header: target.strip()
            for header, target in (entries or {}).items()
            if header is not None and target and target.strip()
        }
        return cls(entries=cleaned, default_type=parse_entity_type(default_type), params=dict(params or {}))

    def __bool__(self) -> bool:
        return bool(self.entries)

    def entity_types(self) -> List[EntityType]:
        """Entity types referenced by the mapping, primary first."""
        found = {split_target(target, self.default_type)[0] for target in self.entries.values()}
        order = [PRIMARY_ENTITY_TYPE, *DEPENDENT_ENTITY_TYPES]
        return [entity_type for entity_type in order if entity_type in found]

    @property
    def is_composite(self) -> bool:
        return len(self.entity_types()) > 1

    def split_by_entity(self) -> Dict[EntityType, Dict[str, str]]:
        """Group the mapping per entity type as ``{entity_type: {header: field}}``."""
        grouped: Dict[EntityType, Dict[str, str]] = {}
        for header, target in self.entries.items():
            entity_type, field_name = split_target(target, self.default_type)
            grouped.setdefault(entity_type, {})[header] = field_name
        return grouped

    def params_by_entity(self) -> Dict[EntityType, Dict[str, str]]:
        grouped: Dict[EntityType, Dict[str, str]] = {}
        for target, params in self.params.items():
            entity_type, field_name = split_target(target, self.default_type)
            grouped.setdefault(entity_type, {})[field_name] = params
        return grouped

    def required_targets(self, composite: Optional[bool] = None) -> List[Tuple[EntityType, str]]:
        """
        Fields that must have a header before any row is read.

        The default entity's required fields are always needed. In a composite
        import a dependent group is optional per row, so only the product key
        is required. A flat dependent import additionally needs the product
        id to link each record to its product.
        """
        composite = self.is_composite if composite is None else composite
        required = [(self.default_type, name) for name in entity_class_for(self.default_type).required_fields()]
        if not composite and self.default_type != PRIMARY_ENTITY_TYPE:
            required.append((self.default_type, "product_id"))
        return required

    def validate(self, headers: Sequence[str], composite: Optional[bool] = None) -> None:
        """
        Check the mapping against the file headers.

        Raises:
            MappingValidationError: On unknown targets, headers missing from the
                file, or required fields without a mapped header
        """
        header_set = set(headers)
        problems: List[str] = []
        mapped: set = set()
        referenced: set = set()

        for header, target in self.entries.items():
            try:
                entity_type, field_name = split_target(target, self.default_type)
            except UnsupportedEntityTypeError as e:
                problems.append(f"Header '{header}': {e.message}")
                continue
            referenced.add(entity_type)
            if field_name not in entity_class_for(entity_type).field_specs():
                problems.append(f"Header '{header}': unknown field '{target}'")
                continue
            if header not in header_set:
                problems.append(f"Header '{header}' is not present in the file")
                continue
            mapped.add((entity_type, field_name))

        if composite is None:
            composite = len(referenced) > 1
        missing = [
            f"{entity_type.prefix}.{field_name}"
            for entity_type, field_name in self.required_targets(composite)
            if (entity_type, field_name) not in mapped
        ]
        if missing:
            problems.append("Required fields have no mapped header: " + ", ".join(missing))

        if problems:
            raise MappingValidationError("; ".join(problems), missing_fields=missing)

    def to_dict(self) -> Dict[str, str]:
        return dict(self.entries)


def _score(header: str, display_name: str) -> int:
    """Similarity score of a header against a display name (both lower-cased)."""
    if header in display_name or display_name in header:
        return CONTAINMENT_SCORE
    display_words = set(display_name.split())
    matches = sum(
        1 for word in header.split() if len(word) >= MIN_WORD_LENGTH and word in display_words
    )
    return matches * WORD_MATCH_SCORE


def _candidates(
    entity_types: Iterable[EntityType], composite: bool
) -> List[Tuple[str, str]]:
    """(lower-cased display name, target) pairs in priority order."""
    candidates: List[Tuple[str, str]] = []
    for entity_type in entity_types:
        entity_cls = entity_class_for(entity_type)
        for spec in entity_cls.FIELDS:
            if composite and entity_type != PRIMARY_ENTITY_TYPE and spec.name == "product_id":
                continue
            target = f"{entity_type.prefix}.{spec.name}" if composite else spec.name
            candidates.append((spec.display_name.lower(), target))
    return candidates


def suggest_mapping(
    headers: Sequence[str],
    entity_type: Any = PRIMARY_ENTITY_TYPE,
    composite: bool = False,
) -> Dict[str, str]:
    """
    Suggest a header -> target mapping from entity display names.

    Exact (case-insensitive) matches are taken first. Remaining headers get
    the best-scoring unused target: 10 when one string contains the other,
    otherwise 2 per shared word of three or more letters. Scores of 3 or
    less leave the header unmapped.

    Args:
        headers: File headers
        entity_type: Target entity type (the primary type for composite imports)
        composite: Include dependent entity fields with ``entity.`` prefixes

    Returns:
        Mapping of header to target for every header that matched
    """
    entity_type = parse_entity_type(entity_type)
    entity_types = [entity_type]
    if composite:
        entity_types = [PRIMARY_ENTITY_TYPE, *DEPENDENT_ENTITY_TYPES]
    candidates = _candidates(entity_types, composite)

    suggestions: Dict[str, str] = {}
    used_targets: set = set()

    for header in headers:
        normalized = (header or "").strip().lower()
        if not normalized:
            continue
        for display_name, target in candidates:
            if normalized == display_name and target not in used_targets:
                suggestions[header] = target
                used_targets.add(target)
                break

    for header in headers:
        normalized = (header or "").strip().lower()
        if not normalized or header in suggestions:
            continue
        best_target = None
        best_score = 0
        for display_name, target in candidates:
            if target in used_targets:
                continue
            score = _score(normalized, display_name)
            if score > best_score:
                best_score = score
                best_target = target
        if best_target and best_score > SUGGESTION_THRESHOLD:
            suggestions[header] = best_target
            used_targets.add(best_target)

    logger.info("Suggested %d of %d header mappings", len(suggestions), len(headers))
    return suggestions


def display_fields(entity_type: Any) -> List[Dict[str, Any]]:
    """Describe the importable fields of an entity type for mapping UIs."""
    entity_cls = entity_class_for(entity_type)
    return [
        {
            "name": spec.name,
            "display_name": spec.display_name,
            "type": spec.type_key,
            "required": spec.required,
        }
        for spec in entity_cls.FIELDS
    ]
