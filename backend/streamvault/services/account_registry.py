from sqlmodel import Session, select
from streamvault.models import StorageAccount
from streamvault.services.drive import DriveAccountClient
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID
import hashlib
import json
import logging
import threading

logger = logging.getLogger(__name__)

ClientFactory = Callable[[StorageAccount], DriveAccountClient]


def default_client_factory(account: StorageAccount) -> DriveAccountClient:
    return DriveAccountClient.from_credentials(account.id, account.email, account.credentials)


def credentials_fingerprint(account: StorageAccount) -> str:
    raw = json.dumps(account.credentials or {}, sort_keys=True, default=str)
    return hashlib.sha256(f"{account.email}:{raw}".encode("utf-8")).hexdigest()


class AccountRegistry:
    """
    process-wide set of loaded drive clients, one per active storage account

    the api, the rq workers and the reconciler each own one. sync() is run
    against the active rows on every pool lookup, so an account added,
    deactivated or re-keyed through the api reaches every process without a
    restart. an account that disappears between selection and use simply
    resolves to None
    """

    def __init__(self, client_factory: ClientFactory = default_client_factory):
        self.client_factory = client_factory
        self._clients: Dict[UUID, DriveAccountClient] = {}
        # credentials each client was built from; clients registered by hand have none
        self._fingerprints: Dict[UUID, str] = {}
        # keys that failed to load, not retried until the credentials change
        self._failed: Dict[UUID, str] = {}
        self._lock = threading.RLock()
        self.loaded = False

    def _active(self, session: Session) -> List[StorageAccount]:
        return session.exec(select(StorageAccount).where(StorageAccount.is_active == True)).all()

    def load(self, session: Session) -> int:
        """drop every client and load the active accounts from scratch"""
        with self._lock:
            self._clients = {}
            self._fingerprints = {}
            self._failed = {}
            self.sync(self._active(session))
            count = len(self._clients)

        if not count:
            logger.warning("no storage accounts loaded")
        else:
            logger.info(f"loaded {count} storage accounts")
        return count

    def reload(self, session: Session) -> int:
        logger.info("reloading storage account registry")
        return self.load(session)

    def sync(self, active_accounts: Iterable[StorageAccount]) -> None:
        """bring the loaded clients in line with the active account rows"""
        accounts = list(active_accounts)
        with self._lock:
            active_ids = {account.id for account in accounts}
            for account_id in [a for a in self._clients if a not in active_ids]:
                logger.info(f"storage account {account_id} no longer active, unloading")
                self._clients.pop(account_id, None)
                self._fingerprints.pop(account_id, None)

            for account in accounts:
                fingerprint = credentials_fingerprint(account)
                if account.id in self._clients:
                    known = self._fingerprints.get(account.id)
                    if known is None or known == fingerprint:
                        continue
                    logger.info(f"credentials of {account.email} changed, reloading client")
                elif self._failed.get(account.id) == fingerprint:
                    continue
                try:
                    self.load_account(account)
                except Exception as e:
                    # one bad key file must not take the whole pool down
                    logger.error(f"failed to load storage account {account.email}: {e}")
                    self._clients.pop(account.id, None)
                    self._failed[account.id] = fingerprint
            self.loaded = True

    def load_account(self, account: StorageAccount) -> DriveAccountClient:
        """build and register the client for one account, raises if the key is unusable"""
        client = self.client_factory(account)
        with self._lock:
            self._clients[account.id] = client
            self._fingerprints[account.id] = credentials_fingerprint(account)
            self._failed.pop(account.id, None)
        return client

    def register(self, account_id: UUID, client: DriveAccountClient) -> None:
        with self._lock:
            self._clients[account_id] = client
            self._fingerprints.pop(account_id, None)
            self.loaded = True

    def unregister(self, account_id: UUID) -> None:
        with self._lock:
            self._clients.pop(account_id, None)
            self._fingerprints.pop(account_id, None)

    def get(self, account_id: UUID) -> Optional[DriveAccountClient]:
        with self._lock:
            return self._clients.get(account_id)

    def account_ids(self) -> List[UUID]:
        with self._lock:
            return list(self._clients.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


# singleton instance
account_registry = AccountRegistry()
