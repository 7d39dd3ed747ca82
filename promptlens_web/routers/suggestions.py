"""
PromptLens Suggestions Router - Enhancement suggestion endpoints

One RequestCoordinator per client session, so rapid calls from the same
editor are debounced and superseded server-side. Superseded calls answer
204 No Content. Calls without a session_id get a coordinator of their own
and never supersede each other.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-05
"""

import json
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from promptlens_core.errors import (
    CancellationError,
    GenerationFailure,
    SuggestionError,
    SuggestionTimeoutError,
    ValidationError,
)
from promptlens_core.coordinator import RequestCoordinator
from promptlens_core.custom import CustomSuggestionService
from promptlens_core.pipeline import PipelineContext, SuggestionPipeline
from promptlens_core.resilience import with_timeout
from promptlens_core.types import (
    CustomSuggestionRequest,
    EditEntry,
    StageEvent,
    StageKind,
    SuggestionRequest,
    SuggestionResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/enhancement-suggestions", tags=["suggestions"])

MAX_SESSIONS = 1000

_context: Optional[PipelineContext] = None
_coordinators: "OrderedDict[str, RequestCoordinator]" = OrderedDict()


def set_pipeline_context(context: Optional[PipelineContext]):
    """Set the shared pipeline context from server.py."""
    global _context
    _context = context
    dispose_coordinators()


def get_pipeline_context() -> PipelineContext:
    if _context is None:
        raise HTTPException(status_code=503, detail="Suggestion pipeline not initialized")
    return _context


def _get_coordinator(session_id: Optional[str]) -> RequestCoordinator:
    """
    Get or create the coordinator of a session (bounded, oldest evicted).

    Anonymous calls (no session_id) get a fresh, undebounced coordinator
    that is not kept.
    """
    context = get_pipeline_context()
    if session_id is None:
        return RequestCoordinator(context, debounce_ms=0)
    coordinator = _coordinators.get(session_id)
    if coordinator is None:
        coordinator = RequestCoordinator(context)
        _coordinators[session_id] = coordinator
        while len(_coordinators) > MAX_SESSIONS:
            _, evicted = _coordinators.popitem(last=False)
            evicted.dispose()
    else:
        _coordinators.move_to_end(session_id)
    return coordinator


def dispose_coordinators():
    while _coordinators:
        _, coordinator = _coordinators.popitem()
        coordinator.dispose()


# Request/Response Models

class EditEntryModel(BaseModel):
    """One recent document edit."""
    original: str
    replacement: str = ""
    category: Optional[str] = None


class SuggestionRequestModel(BaseModel):
    """Request for alternatives to a highlighted span."""
    highlighted_text: str = Field(..., min_length=1)
    context_before: str = ""
    context_after: str = ""
    full_document_fingerprint: Optional[str] = None
    document_text: Optional[str] = None  # fingerprinted server-side when given
    semantic_category: str = "general"
    edit_history: List[EditEntryModel] = Field(default_factory=list)
    document_mode: str = "video"
    document_id: Optional[str] = None
    session_id: Optional[str] = None  # None = no debounce, no supersede
    debug: bool = False

    def to_request(self) -> SuggestionRequest:
        history = [EditEntry(original=e.original, replacement=e.replacement, category=e.category)
                   for e in self.edit_history]
        if self.document_text is not None:
            return SuggestionRequest.create(
                highlighted_text=self.highlighted_text,
                context_before=self.context_before,
                context_after=self.context_after,
                semantic_category=self.semantic_category,
                edit_history=history,
                document_mode=self.document_mode,
                document_text=self.document_text,
                document_id=self.document_id,
                debug=self.debug,
            )
        return SuggestionRequest(
            highlighted_text=self.highlighted_text,
            context_before=self.context_before,
            context_after=self.context_after,
            full_document_fingerprint=self.full_document_fingerprint or "",
            semantic_category=self.semantic_category,
            edit_history_tail=tuple(history),
            document_mode=self.document_mode,
            document_id=self.document_id,
            debug=self.debug,
        )


class CustomSuggestionRequestModel(BaseModel):
    """Free-text request about a highlighted span."""
    highlighted_text: str = Field(..., min_length=1)
    custom_request: str = Field(..., min_length=1)
    context_before: str = ""
    context_after: str = ""
    document_text: Optional[str] = None
    document_id: Optional[str] = None

    def to_request(self) -> CustomSuggestionRequest:
        return CustomSuggestionRequest(
            highlighted_text=self.highlighted_text,
            custom_request=self.custom_request,
            context_before=self.context_before,
            context_after=self.context_after,
            document_text=self.document_text or "",
            document_id=self.document_id,
        )


class InvalidateRequest(BaseModel):
    """Drop every cached entry of one document."""
    document_id: str = Field(..., min_length=1)


def _error_response(status_code: int, error: SuggestionError) -> JSONResponse:
    body = SuggestionResult.empty(error.reason).to_dict()
    body["error"] = str(error)
    return JSONResponse(status_code=status_code, content=body)


# Endpoints

@router.post("")
async def request_suggestions(body: SuggestionRequestModel):
    """Get suggestions for a highlighted span (debounced per session)."""
    coordinator = _get_coordinator(body.session_id)
    try:
        req = body.to_request()
        result = await coordinator.request_suggestions(req)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except CancellationError:
        return Response(status_code=204)
    except SuggestionTimeoutError as e:
        return _error_response(504, e)
    except GenerationFailure as e:
        return _error_response(502, e)
    finally:
        if body.session_id is None:
            coordinator.dispose()
    return result.to_dict()


@router.post("/custom")
async def request_custom_suggestions(body: CustomSuggestionRequestModel):
    """Get suggestions that satisfy a free-text request."""
    context = get_pipeline_context()
    service = CustomSuggestionService(context)
    try:
        req = body.to_request().validate()
        result = await with_timeout(service.suggest(req), context.config.coordinator.timeout_ms)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SuggestionTimeoutError as e:
        return _error_response(504, e)
    except GenerationFailure as e:
        return _error_response(502, e)
    return result.to_dict()


@router.post("/stream")
async def stream_suggestions(body: SuggestionRequestModel):
    """
    Run a request and stream draft / candidates / done events as NDJSON.

    The stream is bounded by the coordinator timeout; a timed-out stream
    ends with a done event carrying reason "timeout".
    """
    context = get_pipeline_context()
    try:
        req = body.to_request().validate()
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    pipeline = SuggestionPipeline(context)

    async def events() -> AsyncIterator[str]:
        try:
            async for event in pipeline.stream(req, timeout_ms=context.config.coordinator.timeout_ms):
                yield json.dumps(event.to_dict()) + "\n"
        except SuggestionError as e:
            logger.warning(f"Streaming request failed: {e}")
            final = StageEvent(StageKind.DONE, result=SuggestionResult.empty(e.reason), error=str(e))
            yield json.dumps(final.to_dict()) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/invalidate")
async def invalidate_document(body: InvalidateRequest) -> Dict[str, Any]:
    """Invalidate every cached suggestion of a document."""
    context = get_pipeline_context()
    try:
        prefix = context.key_factory.build_prefix(body.document_id)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    removed = await context.cache.invalidate(prefix)
    return {"document_id": body.document_id, "removed": removed}
