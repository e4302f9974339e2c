"""
Field catalogue endpoints used to build mappings by hand.
"""
from fastapi import APIRouter

from price_import.api.dependencies import to_http_exception
from price_import.api.schemas.shared import EntityFieldsResponse, FieldInfo
from price_import.domain.imports.entities import parse_entity_type
from price_import.domain.imports.errors import ImportPipelineError
from price_import.domain.imports.mapping import display_fields

router = APIRouter(tags=["mapping"])


@router.get("/mapping/fields/{entity_type}", response_model=EntityFieldsResponse)
async def entity_fields_endpoint(entity_type: str):
    """List the importable fields of an entity type with their display names."""
    try:
        parsed = parse_entity_type(entity_type)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return EntityFieldsResponse(
        entity_type=parsed.value,
        fields=[FieldInfo(**item) for item in display_fields(parsed)],
    )
