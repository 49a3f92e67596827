"""
chunked upload assembler

chunks land in <scratch>/<upload id>/chunk_00000 ... and may arrive in any
order, more than once. complete_upload stitches them together in index
order, hands the result to the storage pool and marks the asset ready.

the chunks are only removed once the pool has the bytes; a failed store
leaves them in place so the same upload id can be completed again.
"""
from sqlmodel import Session, select
from streamvault.core.config import settings
from streamvault.core.errors import (
    StreamVaultException, InvalidRequest, IncompleteUpload, UploadNotFound, UploadFailed,
)
from streamvault.models import Asset, AssetStatus, ASSET_CATEGORIES
from streamvault.services import queue as job_queue
from streamvault.services.previews import preview_kind
from streamvault.services.storage_pool import StoragePool, storage_pool
from datetime import datetime
from typing import BinaryIO, List, Optional, Union
from uuid import UUID, uuid4
import hashlib
import json
import logging
import os
import re
import shutil
import time

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
# present while one request is combining and storing the chunks
CLAIM_FILE = ".completing"
_CHUNK_RE = re.compile(r"^chunk_(\d+)$")


def _file_hash(path: str) -> str:
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for byte_block in iter(lambda: f.read(1024 * 1024), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


class ChunkedUploadAssembler:
    def __init__(
        self,
        pool: StoragePool,
        scratch_dir: str = settings.UPLOAD_SCRATCH_DIR,
        claim_timeout: float = settings.UPLOAD_CLAIM_TIMEOUT_SECONDS,
    ):
        self.pool = pool
        self.scratch_dir = scratch_dir
        self.claim_timeout = claim_timeout

    def _upload_dir(self, upload_id: str) -> str:
        # upload ids are uuids we handed out, anything else is not ours
        try:
            upload_id = str(UUID(str(upload_id)))
        except ValueError:
            raise UploadNotFound(f"upload session {upload_id} not found")
        return os.path.join(self.scratch_dir, upload_id)

    def _read_metadata(self, upload_dir: str) -> dict:
        try:
            with open(os.path.join(upload_dir, METADATA_FILE), "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}

    def _get_asset(self, session: Session, upload_id: str) -> Asset:
        asset = session.exec(select(Asset).where(Asset.identifier == str(upload_id))).first()
        if asset is None:
            raise UploadNotFound(f"upload session {upload_id} not found")
        return asset

    def init_upload(
        self,
        session: Session,
        name: str,
        size: int,
        media_type: str,
        category: str,
        folder_tag: Optional[str] = None,
        chunk_size: Optional[int] = None,
    ) -> dict:
        """initialize a chunked upload session"""
        if category not in ASSET_CATEGORIES:
            raise InvalidRequest(f"unknown category {category!r}, expected one of: {', '.join(ASSET_CATEGORIES)}")
        if size <= 0:
            raise InvalidRequest("size must be positive")
        chunk_size = chunk_size or settings.DEFAULT_CHUNK_SIZE
        if chunk_size <= 0:
            raise InvalidRequest("chunk size must be positive")

        upload_id = str(uuid4())
        asset = Asset(
            identifier=upload_id,
            name=name,
            category=category,
            size_bytes=size,
            media_type=media_type,
            status=AssetStatus.PROCESSING,
            folder_tag=folder_tag,
        )
        session.add(asset)
        session.commit()
        session.refresh(asset)

        total_chunks = (size + chunk_size - 1) // chunk_size
        upload_dir = self._upload_dir(upload_id)
        os.makedirs(upload_dir, exist_ok=True)
        with open(os.path.join(upload_dir, METADATA_FILE), "w") as f:
            json.dump({
                "name": name,
                "size": size,
                "chunk_size": chunk_size,
                "total_chunks": total_chunks,
                "created_at": datetime.utcnow().isoformat(),
            }, f)

        logger.info(f"upload {upload_id} started: {name} ({size} bytes, {total_chunks} chunks)")
        return {
            "uploadId": upload_id,
            "assetId": str(asset.id),
            "totalChunks": total_chunks,
            "chunkSize": chunk_size,
        }

    def accept_chunk(self, upload_id: str, index: int, data: Union[bytes, BinaryIO]) -> dict:
        """store one chunk; resending an index overwrites it"""
        upload_dir = self._upload_dir(upload_id)
        if not os.path.isdir(upload_dir):
            raise UploadNotFound(f"upload session {upload_id} not found")
        if index < 0:
            raise InvalidRequest("chunk index must be >= 0")
        total_chunks = self._read_metadata(upload_dir).get("total_chunks")
        if total_chunks is not None and index >= total_chunks:
            raise InvalidRequest(f"chunk index {index} out of range (0..{total_chunks - 1})")

        chunk_path = os.path.join(upload_dir, f"chunk_{index:05d}")
        tmp_path = f"{chunk_path}.{uuid4().hex}.part"
        try:
            with open(tmp_path, "wb") as f:
                if isinstance(data, (bytes, bytearray)):
                    f.write(data)
                else:
                    shutil.copyfileobj(data, f)
            os.replace(tmp_path, chunk_path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        return {"uploadId": upload_id, "index": index, "size": os.path.getsize(chunk_path)}

    def received_chunks(self, upload_id: str) -> List[int]:
        upload_dir = self._upload_dir(upload_id)
        if not os.path.isdir(upload_dir):
            return []
        indices = []
        for name in os.listdir(upload_dir):
            match = _CHUNK_RE.match(name)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    def status(self, session: Session, upload_id: str) -> dict:
        asset = self._get_asset(session, upload_id)
        metadata = self._read_metadata(self._upload_dir(upload_id))
        return {
            "uploadId": upload_id,
            "assetId": str(asset.id),
            "status": asset.status,
            "totalChunks": metadata.get("total_chunks"),
            "receivedChunks": self.received_chunks(upload_id),
            "error": asset.error_message,
        }

    def _claim(self, upload_dir: str) -> bool:
        """take the completion claim for an upload, False if another request holds it"""
        claim_path = os.path.join(upload_dir, CLAIM_FILE)
        try:
            fd = os.open(claim_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileNotFoundError:
            # scratch dir already removed by a completed request
            return False
        except FileExistsError:
            try:
                age = time.time() - os.path.getmtime(claim_path)
            except FileNotFoundError:
                return False
            if age < self.claim_timeout:
                return False
            logger.warning(f"taking over stale completion claim {claim_path} ({age:.0f}s old)")
            self._release_claim(upload_dir)
            try:
                fd = os.open(claim_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except (FileNotFoundError, FileExistsError):
                return False
        os.close(fd)
        return True

    def _release_claim(self, upload_dir: str) -> None:
        try:
            os.remove(os.path.join(upload_dir, CLAIM_FILE))
        except FileNotFoundError:
            pass

    def complete_upload(self, session: Session, upload_id: str) -> dict:
        """
        finalize a chunked upload by combining chunks and storing the result

        only one request at a time gets to combine and store; a concurrent
        call gets the asset's current status back. completing an asset whose
        earlier store failed tries the store again with the kept chunks
        """
        asset = self._get_asset(session, upload_id)
        if asset.status == AssetStatus.READY and asset.primary_blob is not None:
            return self._result(asset)

        upload_dir = self._upload_dir(upload_id)
        if not os.path.isdir(upload_dir):
            raise UploadNotFound(f"no chunks stored for upload {upload_id}")

        if not self._claim(upload_dir):
            logger.info(f"upload {upload_id} is already being completed")
            session.refresh(asset)
            return self._result(asset)

        combined_path = os.path.join(self.scratch_dir, f"{upload_id}_{uuid4().hex}_combined")
        stored = False
        try:
            session.refresh(asset)
            if asset.status == AssetStatus.READY and asset.primary_blob is not None:
                return self._result(asset)

            received = self.received_chunks(upload_id)
            metadata = self._read_metadata(upload_dir)
            expected = max(metadata.get("total_chunks", 0), (received[-1] + 1) if received else 0)
            missing = sorted(set(range(expected)) - set(received))
            if not received or missing:
                # asset stays processing so the client can resend and complete again
                raise IncompleteUpload(f"upload {upload_id} is missing chunks: {missing or [0]}", missing or [0])

            if asset.status == AssetStatus.FAILED:
                logger.info(f"upload {upload_id} failed to store before, trying again")
                asset.status = AssetStatus.PROCESSING
                asset.error_message = None

            with open(combined_path, "wb") as output:
                for index in received:
                    with open(os.path.join(upload_dir, f"chunk_{index:05d}"), "rb") as chunk:
                        shutil.copyfileobj(chunk, output)

            size = os.path.getsize(combined_path)
            if size != asset.size_bytes:
                logger.warning(f"upload {upload_id} declared {asset.size_bytes} bytes, received {size}")
                asset.size_bytes = size
            asset.extra = {**(asset.extra or {}), "sha256": _file_hash(combined_path)}

            self._store(session, asset, combined_path)
            stored = True
        finally:
            if os.path.exists(combined_path):
                os.remove(combined_path)
            if stored:
                shutil.rmtree(upload_dir, ignore_errors=True)
            else:
                self._release_claim(upload_dir)

        logger.info(f"upload {upload_id} complete: asset {asset.id} on {asset.account_id}")
        self._schedule_preview(asset)
        return self._result(asset)

    def upload_small_file(
        self,
        session: Session,
        data: BinaryIO,
        name: str,
        media_type: str,
        category: str,
        folder_tag: Optional[str] = None,
    ) -> dict:
        """single-request upload for files small enough to skip chunking"""
        if category not in ASSET_CATEGORIES:
            raise InvalidRequest(f"unknown category {category!r}, expected one of: {', '.join(ASSET_CATEGORIES)}")

        os.makedirs(self.scratch_dir, exist_ok=True)
        identifier = str(uuid4())
        local_path = os.path.join(self.scratch_dir, f"{identifier}_single")
        try:
            with open(local_path, "wb") as f:
                shutil.copyfileobj(data, f)
            size = os.path.getsize(local_path)
            if size == 0:
                raise InvalidRequest("empty file")

            asset = Asset(
                identifier=identifier,
                name=name,
                category=category,
                size_bytes=size,
                media_type=media_type,
                status=AssetStatus.PROCESSING,
                folder_tag=folder_tag,
                extra={"sha256": _file_hash(local_path)},
            )
            session.add(asset)
            session.commit()
            session.refresh(asset)

            self._store(session, asset, local_path)
        finally:
            if os.path.exists(local_path):
                os.remove(local_path)

        self._schedule_preview(asset)
        return self._result(asset)

    def import_remote(
        self,
        session: Session,
        remote_id: str,
        category: str,
        name: Optional[str] = None,
        media_type: Optional[str] = None,
        folder_tag: Optional[str] = None,
    ) -> dict:
        """adopt an object that already lives on one of the pool's accounts"""
        if category not in ASSET_CATEGORIES:
            raise InvalidRequest(f"unknown category {category!r}, expected one of: {', '.join(ASSET_CATEGORIES)}")

        existing = session.exec(select(Asset).where(Asset.remote_id == remote_id)).first()
        if existing is not None:
            return {**self._result(existing), "imported": False}

        blob, metadata = self.pool.locate(session, remote_id)
        asset = Asset(
            identifier=str(uuid4()),
            name=name or metadata.get("name") or remote_id,
            category=category,
            size_bytes=int(metadata.get("size") or 0),
            media_type=media_type or metadata.get("mimeType") or "application/octet-stream",
            status=AssetStatus.READY,
            source="import",
            folder_tag=folder_tag,
            account_id=blob.account_id,
            remote_id=blob.remote_id,
            extra={"drive": metadata},
        )
        session.add(asset)
        session.commit()
        session.refresh(asset)

        logger.info(f"imported {remote_id} from account {blob.account_id} as asset {asset.id}")
        self._schedule_preview(asset)
        return {**self._result(asset), "imported": True}

    def _store(self, session: Session, asset: Asset, local_path: str) -> None:
        """put the bytes in the pool and flip the asset to ready or failed"""
        try:
            blob = self.pool.put(session, local_path, asset.media_type, asset.name)
        except Exception as e:
            message = e.message if isinstance(e, StreamVaultException) else f"{e.__class__.__name__}: {e}"
            asset.status = AssetStatus.FAILED
            asset.error_message = message
            asset.updated_at = datetime.utcnow()
            session.add(asset)
            session.commit()
            logger.error(f"storing asset {asset.id} failed: {message}")
            if isinstance(e, UploadFailed):
                raise
            raise UploadFailed(message) from e

        asset.account_id = blob.account_id
        asset.remote_id = blob.remote_id
        asset.status = AssetStatus.READY
        asset.error_message = None
        asset.updated_at = datetime.utcnow()
        session.add(asset)
        session.commit()
        session.refresh(asset)

    def _schedule_preview(self, asset: Asset) -> None:
        if preview_kind(asset.media_type) is None:
            return
        try:
            job_queue.enqueue_preview(asset.id)
        except Exception as e:
            # the asset is stored, a missing preview can be regenerated later
            logger.warning(f"could not queue preview for asset {asset.id}: {e}")

    def _result(self, asset: Asset) -> dict:
        return {
            "assetId": str(asset.id),
            "uploadId": asset.identifier,
            "name": asset.name,
            "status": asset.status,
            "size": asset.size_bytes,
            "accountId": str(asset.account_id) if asset.account_id else None,
            "remoteId": asset.remote_id,
        }


# singleton instance
upload_assembler = ChunkedUploadAssembler(storage_pool)
