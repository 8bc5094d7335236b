import os
import random
import time
from typing import Iterable

from fastapi import HTTPException, UploadFile

from config import UPLOAD_DIR

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".webm", ".mkv"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".m4a"}
DOCUMENT_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".xls", ".xlsx", ".csv"}
MEDIA_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS
ATTACHMENT_EXTENSIONS = MEDIA_EXTENSIONS | AUDIO_EXTENSIONS | DOCUMENT_EXTENSIONS

SUBDIRS = ("profilePics", "productImages", "recipes", "groupCovers", "messages")


def ensure_upload_dirs():
    for sub in SUBDIRS:
        os.makedirs(os.path.join(UPLOAD_DIR, sub), exist_ok=True)


def extension_of(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def kind_of(filename: str) -> str:
    ext = extension_of(filename)
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return "document"


def save_upload(file: UploadFile, subdir: str, field: str, allowed: Iterable[str] = MEDIA_EXTENSIONS) -> dict:
    """Write an uploaded file to disk and return its public url and metadata."""
    ext = extension_of(file.filename)
    if ext not in allowed:
        raise HTTPException(status_code=400, detail=f"File type {ext or 'unknown'} is not allowed")
    filename = f"{field}-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"
    folder = os.path.join(UPLOAD_DIR, subdir)
    os.makedirs(folder, exist_ok=True)
    path = os.path.join(folder, filename)
    data = file.file.read()
    with open(path, "wb") as out:
        out.write(data)
    return {
        "url": f"/uploads/{subdir}/{filename}",
        "filename": file.filename,
        "mimetype": file.content_type,
        "size": len(data),
        "kind": kind_of(file.filename),
    }


def delete_upload(url: str):
    """Remove a file written by save_upload, given its public url."""
    if not url or not url.startswith("/uploads/"):
        return
    path = os.path.join(UPLOAD_DIR, *url[len("/uploads/"):].split("/"))
    if os.path.isfile(path):
        os.remove(path)
