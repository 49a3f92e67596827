from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session
from streamvault.api.deps import get_assembler
from streamvault.api.envelope import ok
from streamvault.core.db import get_session
from streamvault.services.chunked_upload import ChunkedUploadAssembler
from typing import Optional

router = APIRouter()


class InitUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: int = Field(gt=0)
    media_type: str = Field(alias="mediaType")
    category: str
    folder_tag: Optional[str] = Field(default=None, alias="folderTag")
    chunk_size: Optional[int] = Field(default=None, alias="chunkSize", gt=0)


class CompleteUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(alias="uploadId")


@router.post("/init")
def init_upload(
    req: InitUploadRequest,
    session: Session = Depends(get_session),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    """initialize a chunked upload session"""
    return ok(assembler.init_upload(
        session,
        name=req.name,
        size=req.size,
        media_type=req.media_type,
        category=req.category,
        folder_tag=req.folder_tag,
        chunk_size=req.chunk_size,
    ))


@router.post("/chunk")
def upload_chunk(
    upload_id: str = Form(..., alias="uploadId"),
    index: int = Form(...),
    chunk: UploadFile = File(...),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    """upload a single chunk, resending an index replaces it"""
    return ok(assembler.accept_chunk(upload_id, index, chunk.file))


@router.post("/complete")
def complete_upload(
    req: CompleteUploadRequest,
    session: Session = Depends(get_session),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    """stitch the chunks together and store the file in the pool"""
    return ok(assembler.complete_upload(session, req.upload_id))


@router.get("/status/{upload_id}")
def get_upload_status(
    upload_id: str,
    session: Session = Depends(get_session),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    return ok(assembler.status(session, upload_id))


@router.post("")
def upload_file(
    file: UploadFile = File(...),
    category: str = Form(...),
    folder_tag: Optional[str] = Form(default=None, alias="folderTag"),
    session: Session = Depends(get_session),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    """single request upload for small files"""
    return ok(assembler.upload_small_file(
        session,
        file.file,
        name=file.filename or "upload",
        media_type=file.content_type or "application/octet-stream",
        category=category,
        folder_tag=folder_tag,
    ))


@router.get("/import")
def import_remote(
    remote_id: str = Query(..., alias="remoteId"),
    category: str = Query(...),
    name: Optional[str] = None,
    media_type: Optional[str] = Query(default=None, alias="mediaType"),
    folder_tag: Optional[str] = Query(default=None, alias="folderTag"),
    session: Session = Depends(get_session),
    assembler: ChunkedUploadAssembler = Depends(get_assembler),
):
    """register an object that already exists on one of the storage accounts"""
    return ok(assembler.import_remote(
        session,
        remote_id,
        category=category,
        name=name,
        media_type=media_type,
        folder_tag=folder_tag,
    ))
