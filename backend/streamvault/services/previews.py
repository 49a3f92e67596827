"""preview images for uploaded assets, stored through the pool like any other blob"""
from PIL import Image
from sqlmodel import Session
from streamvault.core.config import settings
from streamvault.core.errors import AssetNotFound, ConversionFailed, InvalidRequest
from streamvault.models import Asset, BlobRef
from streamvault.services import ffmpeg
from streamvault.services.storage_pool import StoragePool, storage_pool
from datetime import datetime
from typing import Optional
from uuid import UUID
import glob
import logging
import os
import shutil
import subprocess

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (200, 200)
PDF_PREVIEW_SIZE = (1000, 1000)


def preview_kind(media_type: Optional[str]) -> Optional[str]:
    """'thumbnail' for videos, 'image' / 'pdf' for previews, None if unsupported"""
    if not media_type:
        return None
    if media_type.startswith("video/"):
        return "thumbnail"
    if media_type.startswith("image/"):
        return "image"
    if media_type == "application/pdf":
        return "pdf"
    return None


def render_image(src_path: str, dest_path: str, size=THUMBNAIL_SIZE) -> str:
    """fit the image in a size box (no upscaling) and write it as jpeg"""
    with Image.open(src_path) as img:
        img.thumbnail(size, Image.LANCZOS)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(dest_path, format="JPEG", quality=85, optimize=True)
    return dest_path


def render_video_thumbnail(src_path: str, dest_path: str) -> str:
    try:
        ffmpeg.extract_frame(src_path, dest_path, "00:00:01", THUMBNAIL_SIZE[0])
    except ConversionFailed:
        # clips shorter than a second have no frame at 1s
        ffmpeg.extract_frame(src_path, dest_path, "00:00:00", THUMBNAIL_SIZE[0])
    if not os.path.exists(dest_path):
        raise ConversionFailed("ffmpeg produced no thumbnail")
    return dest_path


def render_pdf_preview(src_path: str, dest_path: str) -> str:
    """rasterise page one with pdftoppm then shrink it with pillow"""
    prefix = os.path.splitext(dest_path)[0] + "_page"
    cmd = ["pdftoppm", "-f", "1", "-l", "1", "-png", "-r", "100", src_path, prefix]
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=120)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise ConversionFailed(f"pdf preview failed: {getattr(e, 'stderr', e)}") from e

    pages = sorted(glob.glob(prefix + "*.png"))
    if not pages:
        raise ConversionFailed("pdftoppm produced no page image")
    return render_image(pages[0], dest_path, PDF_PREVIEW_SIZE)


RENDERERS = {
    "thumbnail": render_video_thumbnail,
    "image": render_image,
    "pdf": render_pdf_preview,
}


class PreviewGenerator:
    def __init__(self, pool: StoragePool, work_dir: str = settings.PREVIEW_DIR):
        self.pool = pool
        self.work_dir = work_dir

    def generate(self, session: Session, asset_id: UUID) -> BlobRef:
        asset = session.get(Asset, asset_id)
        if asset is None:
            raise AssetNotFound(f"asset {asset_id} not found")
        kind = preview_kind(asset.media_type)
        if kind is None:
            raise InvalidRequest(f"no preview for {asset.media_type}")
        if asset.primary_blob is None:
            raise InvalidRequest(f"asset {asset_id} has not finished uploading")

        work = os.path.join(self.work_dir, str(asset.id))
        os.makedirs(work, exist_ok=True)
        try:
            source = os.path.join(work, "source" + os.path.splitext(asset.name)[1])
            self.pool.get(session, asset.primary_blob, source)
            preview_path = RENDERERS[kind](source, os.path.join(work, "preview.jpg"))

            previous = asset.thumbnail_blob
            blob = self.pool.put(session, preview_path, "image/jpeg", f"{asset.id}_preview.jpg")
            asset.thumbnail_account_id = blob.account_id
            asset.thumbnail_remote_id = blob.remote_id
            asset.updated_at = datetime.utcnow()
            session.add(asset)
            session.commit()
            if previous is not None and previous != blob:
                self.pool.delete(previous)
            logger.info(f"stored {kind} preview for asset {asset.id}")
            return blob
        finally:
            shutil.rmtree(work, ignore_errors=True)


# singleton instance
preview_generator = PreviewGenerator(storage_pool)
