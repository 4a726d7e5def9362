from __future__ import annotations

from argparse import ArgumentParser
from pathlib import Path
from typing import *

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates

from xcomsave import DecodeOptions, SaveFormatError, decode_save, document_tree

MAX_UPLOAD_BYTES = 64 * 1024 * 1024

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

app = FastAPI(title="XCOM Save Inspector", version="0.1.0")
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


@app.get("/")
def index(request: Request):
    return templates.TemplateResponse(request, "index.html")


@app.post("/api/upload")
async def api_upload(file: UploadFile = File(...), compression: str = "lzo") -> JSONResponse:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Missing filename")

    try:
        raw = await file.read(MAX_UPLOAD_BYTES + 1)
    finally:
        await file.close()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Save file too large")

    try:
        save = await run_in_threadpool(decode_save, raw, DecodeOptions(compression=compression))
    except SaveFormatError as e:
        offset = f"0x{e.offset:x}" if e.offset is not None else None
        raise HTTPException(
            status_code=400, detail={"kind": e.kind, "offset": offset, "message": str(e)})

    return JSONResponse(document_tree(save))


def main() -> None:
    parser = ArgumentParser(prog="xcomsave_webapp",
                            description="xcomsave Web App")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000,
                        help="Port to bind (default: 8000)")
    args = parser.parse_args()

    import uvicorn  # imported here so uvicorn stays optional unless the webapp is served
    uvicorn.run("xcomsave.webapp:app", host=args.host,
                port=args.port, reload=False, log_level="info")


if __name__ == "__main__":
    main()
