"""POST /import: run the chunked importer on an uploaded workbook."""

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from crm_import.errors import ValidationError, WorkbookError
from crm_import.pipeline.pipeline import ImportOptions, ImportPipeline
from crm_import.pipeline.state import ImportState

from ..auth import verify_worker_token

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/import")
async def import_workbook(
    request: Request,
    file: UploadFile = File(...),
    pipeline_id: str = Form(...),
    user_id: str | None = Form(None),
    _auth: None = Depends(verify_worker_token),
):
    """Import an .xlsx workbook into the given sales pipeline."""
    log = logger.bind(filename=file.filename, pipeline_id=pipeline_id)
    data = await file.read()
    log.info("import.received", size=len(data))

    pipeline = ImportPipeline(request.app.state.store)
    options = ImportOptions(pipeline_id=pipeline_id, user_id=user_id, chunked=True)

    try:
        result = await pipeline.import_file(data, file.filename, options)
    except (ValidationError, WorkbookError) as e:
        log.warning("import.rejected", error=e.message)
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        log.error("import.failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(status_code=500, content={"error": str(e)})

    if result.state == ImportState.FAILED:
        log.error("import.failed", error=result.failure)
        return JSONResponse(
            status_code=500,
            content={"error": result.failure, **result.to_dict()},
        )

    log.info(
        "import.complete",
        parsed_rows=result.parsed_rows,
        errors=len(result.errors),
        processing_time_ms=result.processing_time_ms,
    )
    return result.to_dict()
