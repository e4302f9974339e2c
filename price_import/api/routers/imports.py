"""
Import endpoints: analyze a file, start an import and follow or cancel it.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from price_import.api.dependencies import get_import_orchestrator, to_http_exception
from price_import.api.schemas.shared import (
    AnalyzeResponse,
    CancelRequest,
    CancelResponse,
    ImportListResponse,
    ImportSettings,
    ImportStartResponse,
    ImportStatusResponse,
)
from price_import.domain.imports.errors import ImportPipelineError
from price_import.domain.imports.mapping import FieldMapping
from price_import.domain.imports.orchestrator import ImportOrchestrator, ImportRequest

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)


def _parse_json_object(raw: Optional[str], field_name: str) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"{field_name} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail=f"{field_name} must be a JSON object")
    return value


def _build_settings(**values: Any) -> ImportSettings:
    try:
        return ImportSettings(**{key: value for key, value in values.items() if value is not None})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))


@router.post("/imports/analyze", response_model=AnalyzeResponse)
async def analyze_file_endpoint(
    file: UploadFile = File(...),
    entity_type: str = Form("product"),
    delimiter: Optional[str] = Form(None),
    quote_char: Optional[str] = Form(None),
    escape_char: Optional[str] = Form(None),
    charset: Optional[str] = Form(None),
    header_row: Optional[int] = Form(None),
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """
    Detect the dialect and headers of a file and suggest a field mapping.

    Parameters:
    - file: CSV, XLS or XLSX file
    - entity_type: product, region or competitor
    - delimiter, quote_char, escape_char, charset: optional dialect overrides

    Returns:
    - Detected dialect (delimited files only), headers and suggested mapping
    """
    options = _build_settings(
        delimiter=delimiter,
        quote_char=quote_char,
        escape_char=escape_char,
        charset=charset,
        header_row=header_row,
    )
    content = await file.read()
    try:
        result = orchestrator.analyze(file.filename, content, entity_type, options)
    except ImportPipelineError as e:
        logger.warning("Analysis of '%s' failed: %s", file.filename, e.message)
        raise to_http_exception(e)
    return AnalyzeResponse(success=True, **result)


@router.post("/imports", response_model=ImportStartResponse, status_code=202)
async def start_import_endpoint(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    client_id: int = Form(...),
    entity_type: str = Form("product"),
    mapping_json: Optional[str] = Form(None),
    params_json: Optional[str] = Form(None),
    duplicate_handling: Optional[str] = Form(None),
    error_handling: Optional[str] = Form(None),
    batch_size: Optional[int] = Form(None),
    delimiter: Optional[str] = Form(None),
    quote_char: Optional[str] = Form(None),
    escape_char: Optional[str] = Form(None),
    charset: Optional[str] = Form(None),
    header_row: Optional[int] = Form(None),
    data_start_row: Optional[int] = Form(None),
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """
    Start an import in the background.

    Parameters:
    - file: CSV, XLS or XLSX file
    - client_id: Owner of the imported records
    - mapping_json: JSON object of header -> target (``field`` or ``entity.field``);
      omitted to use the suggested mapping
    - params_json: JSON object of target -> transformer params
    - duplicate_handling: IGNORE, SKIP or OVERRIDE
    - error_handling: stop, continue or report

    Returns:
    - The operation id to poll with GET /imports/{operation_id}
    """
    options = _build_settings(
        duplicate_handling=duplicate_handling,
        error_handling=error_handling,
        batch_size=batch_size,
        delimiter=delimiter,
        quote_char=quote_char,
        escape_char=escape_char,
        charset=charset,
        header_row=header_row,
        data_start_row=data_start_row,
    )
    entries = _parse_json_object(mapping_json, "mapping_json")
    params = _parse_json_object(params_json, "params_json")
    content = await file.read()

    try:
        mapping = FieldMapping.from_dict(entries, entity_type, params) if entries else None
        request = ImportRequest(
            client_id=client_id,
            entity_type=entity_type,
            file_name=file.filename,
            file_content=content,
            mapping=mapping,
            options=options,
        )
        operation_id = orchestrator.submit(request)
    except ImportPipelineError as e:
        logger.warning("Import of '%s' rejected: %s", file.filename, e.message)
        raise to_http_exception(e)

    background_tasks.add_task(orchestrator.run, operation_id)
    logger.info("Queued import %s for client %s (%s)", operation_id, client_id, file.filename)
    return ImportStartResponse(
        success=True,
        operation_id=operation_id,
        status="INIT",
        message="Import started",
    )


@router.get("/imports/{operation_id}", response_model=ImportStatusResponse)
async def get_import_status_endpoint(
    operation_id: str,
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    try:
        operation = orchestrator.get_status(operation_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportStatusResponse(success=True, operation=operation)


@router.get("/imports", response_model=ImportListResponse)
async def list_imports_endpoint(
    client_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    operations, total = orchestrator.list_operations(client_id=client_id, limit=limit, offset=offset)
    return ImportListResponse(
        success=True,
        operations=operations,
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.post("/imports/{operation_id}/cancel", response_model=CancelResponse)
async def cancel_import_endpoint(
    operation_id: str,
    request: Optional[CancelRequest] = None,
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """Request cooperative cancellation; the import stops at its next chunk boundary."""
    reason = request.reason if request else None
    try:
        result = orchestrator.cancel(operation_id, reason)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return CancelResponse(
        success=True,
        operation_id=operation_id,
        status=result["status"],
        message="Cancellation requested",
    )
