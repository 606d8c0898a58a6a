import logging
import os
import secrets
import time
from typing import Optional
from urllib.parse import unquote, urlparse

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile

import config
from errors import AppError, ValidationError
from notifications import aws_client

logger = logging.getLogger(__name__)

MAX_FILES = 10


def object_url(key: str) -> str:
    return f"https://{config.AWS_BUCKET_NAME}.s3.{config.AWS_REGION}.amazonaws.com/{key}"


def object_key(folder: str, field: str, filename: Optional[str]) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return f"{folder}/{field}-{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}{ext}"


def upload_file(file: UploadFile, folder: str = "uploads", field: str = "image") -> dict:
    if not config.s3_enabled():
        raise AppError("File storage is not configured", status_code=503)
    if not (file.content_type or "").startswith("image/"):
        raise ValidationError("Only image files are allowed.")
    data = file.file.read()
    if len(data) > config.MAX_FILE_SIZE:
        raise ValidationError(f"File too large. Maximum size is {config.MAX_FILE_SIZE // (1024 * 1024)}MB.")
    key = object_key(folder, field, file.filename)
    try:
        aws_client("s3").put_object(
            Bucket=config.AWS_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=file.content_type,
            Metadata={"fieldName": field},
        )
    except (BotoCoreError, ClientError) as e:
        logger.error("S3 upload failed for %s: %s", key, e)
        raise AppError("File upload failed.", status_code=502)
    logger.info("Uploaded %s (%d bytes) to %s", file.filename, len(data), key)
    return {
        "filename": key,
        "original_name": file.filename,
        "url": object_url(key),
        "size": len(data),
        "bucket": config.AWS_BUCKET_NAME,
    }


def delete_file(url: Optional[str]) -> bool:
    if not url or not config.s3_enabled():
        return False
    parsed = urlparse(url)
    if config.AWS_BUCKET_NAME not in (parsed.netloc or ""):
        logger.warning("Refusing to delete %s: not in bucket %s", url, config.AWS_BUCKET_NAME)
        return False
    key = unquote(parsed.path.lstrip("/"))
    try:
        aws_client("s3").delete_object(Bucket=config.AWS_BUCKET_NAME, Key=key)
    except (BotoCoreError, ClientError) as e:
        logger.warning("S3 delete failed for %s: %s", key, e)
        return False
    logger.info("Deleted %s from S3", key)
    return True
