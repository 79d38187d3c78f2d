"""
Upload endpoint.

POST /api/upload (multipart, field "file", optional "projectId").
Storing a file never triggers execution.
"""

from typing import Optional

from fastapi import APIRouter, File, Form, Request, UploadFile

router = APIRouter(prefix="/api", tags=["upload"])


@router.post("/upload")
def upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    projectId: Optional[str] = Form(None),
):
    """Stream the upload into the uploads store (see UploadStore.save for errors)."""
    gateway = request.app.state.gateway
    if file is None:
        stored = gateway.upload(None, None, None, projectId)
    else:
        stored = gateway.upload(file.file, file.filename, file.content_type, projectId)
    return stored.to_dict()
