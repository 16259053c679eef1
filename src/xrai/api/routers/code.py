from __future__ import annotations

from fastapi import APIRouter

from ...domain.conversation_models import CodeExtractRequest, CodeExtractResponse
from ...services import code_extractor

router = APIRouter(prefix="/code", tags=["code"])


@router.post("/extract", response_model=CodeExtractResponse)
def extract_code(payload: CodeExtractRequest) -> CodeExtractResponse:
    # The run action re-scans leniently; the live preview only trusts closed fences.
    if payload.allow_unterminated:
        code = code_extractor.extract_for_run(payload.content)
    else:
        code = code_extractor.extract(payload.content)
    return CodeExtractResponse(
        code=code,
        has_code=code is not None,
        run_scene=code_extractor.has_run_scene_trigger(payload.content),
        display_text=code_extractor.strip_control_tokens(payload.content),
    )
