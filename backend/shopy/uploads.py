import os
from typing import Optional
from urllib.parse import urljoin
from uuid import uuid4

from flask import current_app, request
from werkzeug.utils import secure_filename


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in current_app.config["ALLOWED_IMAGE_EXTENSIONS"]


def save_image(image_file, prefix: str = ""):
    if not image_file or not getattr(image_file, "filename", ""):
        return None, "An image file is required."

    original_filename = secure_filename(image_file.filename)
    if not original_filename:
        return None, "Please choose a valid file name."

    if not allowed_image_extension(original_filename):
        return (
            None,
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
        )

    extension = os.path.splitext(original_filename)[1].lower()
    unique_filename = f"{prefix}{uuid4().hex}{extension}"
    destination = os.path.join(current_app.config["UPLOAD_FOLDER"], unique_filename)

    try:
        image_file.save(destination)
    except OSError:
        return None, "We could not store the uploaded image. Please try again."

    return unique_filename, None


def remove_image(filename: Optional[str]) -> None:
    if not filename:
        return

    # Only files stored by save_image live in the upload folder.
    target = os.path.join(current_app.config["UPLOAD_FOLDER"], os.path.basename(str(filename)))
    try:
        os.remove(target)
    except OSError:
        return


def build_upload_url(filename: Optional[str]) -> str:
    if not filename:
        return ""

    sanitized = str(filename).strip()
    if not sanitized:
        return ""

    return urljoin(request.host_url, f"uploads/{sanitized}")
