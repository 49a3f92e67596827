"""
storage pool manager

treats every active storage account as one elastic store. selection is a
two-tier greedy max-free policy:

- accounts whose free fraction would drop below RESERVE_MARGIN are excluded
- accounts above COMFORT_MARGIN are preferred over the rest
- inside a tier the account with the most absolute free bytes wins, ties go
  to the lowest account id

used_bytes is advisory; it is bumped with a single UPDATE after each upload
and overwritten from drive's own quota report by reconcile_usage().
"""
from sqlalchemy import update
from sqlmodel import Session, select
from streamvault.core.config import settings
from streamvault.core.errors import (
    retry_with_backoff, RateLimited, DriveError, PoolExhausted,
    UploadFailed, DownloadFailed, BlobNotFound,
)
from streamvault.models import StorageAccount, BlobRef
from streamvault.services.account_registry import AccountRegistry, account_registry
from streamvault.services.drive import TRANSPORT_ERRORS
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import UUID
import logging
import os
import threading
import time

logger = logging.getLogger(__name__)


class StoragePool:
    def __init__(
        self,
        registry: AccountRegistry,
        reserve_margin: float = settings.RESERVE_MARGIN,
        comfort_margin: float = settings.COMFORT_MARGIN,
        max_retries: int = settings.DRIVE_MAX_RETRIES,
        retry_base_delay: float = settings.DRIVE_RETRY_BASE_DELAY,
        retry_max_delay: float = settings.DRIVE_RETRY_MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not 0 <= reserve_margin <= comfort_margin <= 1:
            raise ValueError("margins must satisfy 0 <= reserve <= comfort <= 1")
        self.registry = registry
        self.reserve_margin = reserve_margin
        self.comfort_margin = comfort_margin
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.sleep = sleep
        # bytes currently being uploaded by this process, per account
        self._inflight: Dict[UUID, int] = {}
        self._inflight_lock = threading.Lock()

    def _call(self, func, *args):
        """run one provider call under the rate-limit retry policy"""
        try:
            return retry_with_backoff(
                max_retries=self.max_retries,
                initial_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                retry_on=(RateLimited,),
                sleep=self.sleep,
            )(func)(*args)
        except TRANSPORT_ERRORS as e:
            # clients other than DriveAccountClient may leak raw transport errors
            raise DriveError(f"transport error: {e.__class__.__name__}: {e}") from e

    def _active_accounts(self, session: Session) -> List[StorageAccount]:
        accounts = session.exec(
            select(StorageAccount).where(StorageAccount.is_active == True)
        ).all()
        # picks up accounts added, deactivated or re-keyed by another process
        self.registry.sync(accounts)
        # an account can be active in the db but missing from the registry (bad key)
        return [a for a in accounts if self.registry.get(a.id) is not None]

    def _probe_order(self, session: Session, preferred: Optional[UUID]) -> List[UUID]:
        others = sorted((a.id for a in self._active_accounts(session)), key=str)
        if preferred is None:
            return others
        return [preferred] + [account_id for account_id in others if account_id != preferred]

    def select_account_for_write(self, session: Session, size_hint: int = 0) -> StorageAccount:
        with self._inflight_lock:
            return self._select(session, size_hint, self._inflight)

    def _select(self, session: Session, size_hint: int, inflight: Dict[UUID, int]) -> StorageAccount:
        comfortable: List[Tuple[int, StorageAccount]] = []
        acceptable: List[Tuple[int, StorageAccount]] = []

        for account in self._active_accounts(session):
            if account.capacity_bytes <= 0:
                continue
            free = account.capacity_bytes - account.used_bytes - inflight.get(account.id, 0) - max(size_hint, 0)
            fraction = free / account.capacity_bytes
            if fraction < self.reserve_margin:
                logger.debug(f"account {account.email} below reserve margin ({fraction:.1%} free)")
                continue
            if fraction > self.comfort_margin:
                comfortable.append((free, account))
            else:
                acceptable.append((free, account))

        tier = comfortable or acceptable
        if not tier:
            raise PoolExhausted(
                f"no storage account has more than {self.reserve_margin:.0%} free for {size_hint} bytes"
            )

        tier.sort(key=lambda item: (-item[0], str(item[1].id)))
        return tier[0][1]

    def _reserve(self, session: Session, size: int) -> StorageAccount:
        # select + reserve under one lock so concurrent puts see each other
        with self._inflight_lock:
            account = self._select(session, size, self._inflight)
            self._inflight[account.id] = self._inflight.get(account.id, 0) + size
            return account

    def _release(self, account_id: UUID, size: int) -> None:
        with self._inflight_lock:
            remaining = self._inflight.get(account_id, 0) - size
            if remaining > 0:
                self._inflight[account_id] = remaining
            else:
                self._inflight.pop(account_id, None)

    def _increment_usage(self, session: Session, account_id: UUID, size: int) -> None:
        session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == account_id)
            .values(used_bytes=StorageAccount.used_bytes + size, updated_at=datetime.utcnow())
        )
        session.commit()

    def put(self, session: Session, local_path: str, media_type: str, name: str) -> BlobRef:
        """upload a local file to the best account, returns where it landed"""
        size = os.path.getsize(local_path)
        account = self._reserve(session, size)
        account_id, email = account.id, account.email

        try:
            client = self.registry.get(account_id)
            if client is None:
                raise UploadFailed(f"storage account {email} became unavailable")

            try:
                remote_id = self._call(client.upload, local_path, media_type, name)
            except DriveError as e:
                raise UploadFailed(f"upload of {name} to {email} failed: {e}") from e

            try:
                self._call(client.make_public, remote_id)
            except DriveError as e:
                self.delete(BlobRef(account_id, remote_id))
                raise UploadFailed(f"could not share {name} on {email}: {e}") from e

            self._increment_usage(session, account_id, size)
        finally:
            self._release(account_id, size)

        logger.info(f"stored {name} ({size} bytes) on {email} as {remote_id}")
        return BlobRef(account_id, remote_id)

    def get(self, session: Session, blob: BlobRef, dest_path: str) -> BlobRef:
        """
        download a blob, falling back to the other active accounts once each
        returns the ref that actually served the bytes
        """
        for account_id in self._probe_order(session, blob.account_id):
            client = self.registry.get(account_id)
            if client is None:
                continue
            try:
                self._call(client.download, blob.remote_id, dest_path)
            except BlobNotFound:
                logger.debug(f"{blob.remote_id} not on account {account_id}")
                _remove_quietly(dest_path)
                continue
            except DriveError as e:
                _remove_quietly(dest_path)
                raise DownloadFailed(f"download of {blob.remote_id} failed: {e}") from e

            if account_id != blob.account_id:
                logger.warning(
                    f"metadata drift: {blob.remote_id} recorded on {blob.account_id} but served by {account_id}"
                )
            return BlobRef(account_id, blob.remote_id)

        raise BlobNotFound(f"remote object {blob.remote_id} not found on any active account")

    def locate(self, session: Session, remote_id: str, preferred: Optional[UUID] = None) -> Tuple[BlobRef, dict]:
        """find which account can see an existing remote object"""
        for account_id in self._probe_order(session, preferred):
            client = self.registry.get(account_id)
            if client is None:
                continue
            try:
                metadata = self._call(client.get_metadata, remote_id)
            except BlobNotFound:
                continue
            except DriveError as e:
                raise DownloadFailed(f"lookup of {remote_id} failed: {e}") from e
            return BlobRef(account_id, remote_id), metadata

        raise BlobNotFound(f"remote object {remote_id} not found on any active account")

    def delete(self, blob: BlobRef) -> bool:
        """best effort, failures are logged and reported as False"""
        client = self.registry.get(blob.account_id)
        if client is None:
            logger.warning(f"cannot delete {blob.remote_id}: account {blob.account_id} not loaded")
            return False
        try:
            self._call(client.delete, blob.remote_id)
            return True
        except DriveError as e:
            logger.warning(f"failed to delete {blob.remote_id} from {blob.account_id}: {e}")
        except BlobNotFound:
            logger.info(f"{blob.remote_id} already gone from {blob.account_id}")
        return False

    def reconcile_usage(self, session: Session) -> List[dict]:
        """overwrite the advisory used_bytes with drive's own quota report"""
        results = []
        for account in self._active_accounts(session):
            client = self.registry.get(account.id)
            try:
                usage, limit = self._call(client.get_quota)
            except DriveError as e:
                logger.error(f"usage reconcile failed for {account.email}: {e}")
                results.append({"id": str(account.id), "reconciled": False, "error": str(e)})
                continue

            now = datetime.utcnow()
            session.execute(
                update(StorageAccount)
                .where(StorageAccount.id == account.id)
                .values(used_bytes=usage, last_reconciled_at=now, updated_at=now)
            )
            session.commit()
            logger.info(f"reconciled {account.email}: used={usage}, provider limit={limit}")
            results.append({"id": str(account.id), "reconciled": True, "usage": usage, "providerLimit": limit})
        return results

    def usage_report(self, session: Session) -> List[dict]:
        self._active_accounts(session)
        accounts = session.exec(select(StorageAccount).order_by(StorageAccount.name)).all()
        report = []
        for account in accounts:
            percent_free = round(account.free_fraction * 100, 1) if account.capacity_bytes > 0 else 0.0
            report.append({
                "id": str(account.id),
                "name": account.name,
                "email": account.email,
                "usage": account.used_bytes,
                "limit": account.capacity_bytes,
                "percentFree": percent_free,
                "isActive": account.is_active,
                "loaded": self.registry.get(account.id) is not None,
                "lastReconciledAt": account.last_reconciled_at.isoformat() if account.last_reconciled_at else None,
            })
        return report


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


# singleton instance
storage_pool = StoragePool(account_registry)
