"""Persisted transfer job and deposit state.

Records are plain JSON-friendly dicts produced by
:py:meth:`~treasury_funding.gateway.coordinator.TransferJob.to_dict` and
:py:meth:`~treasury_funding.gateway.deposit.DepositRecord.to_dict`.

- Transfer jobs are keyed ``job:<id>``
- Deposits are keyed ``deposit:<chain>:<depositor>``, a new deposit on the same chain supersedes the old record

Example:

.. code-block:: python

    store = SQLiteJobStore(Path("~/.treasury-funding/gateway.sqlite").expanduser())
    coordinator = TransferCoordinator(..., store=store)
"""

import abc
import copy
import logging
import threading
from pathlib import Path

from treasury_funding.sqlite_cache import JSONKeyValueStore

logger = logging.getLogger(__name__)


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _deposit_key(chain: str, depositor: str) -> str:
    return f"deposit:{chain}:{depositor.lower()}"


class JobStore(abc.ABC):
    """Where the coordinator and deposit monitors keep their state."""

    @abc.abstractmethod
    def save_job(self, job_id: str, data: dict):
        """Write or overwrite a transfer job record."""

    @abc.abstractmethod
    def load_job(self, job_id: str) -> dict | None:
        """Read a transfer job record, ``None`` if it does not exist."""

    @abc.abstractmethod
    def list_jobs(self) -> list[dict]:
        """All transfer job records."""

    @abc.abstractmethod
    def save_deposit(self, chain: str, depositor: str, data: dict):
        """Write the latest deposit record of a depositor on a chain."""

    @abc.abstractmethod
    def load_deposit(self, chain: str, depositor: str) -> dict | None:
        """Read the latest deposit record, ``None`` if there is none."""

    @abc.abstractmethod
    def list_deposits(self) -> list[dict]:
        """All deposit records."""


class InMemoryJobStore(JobStore):
    """Dict backed store for tests.

    Records are deep copied in and out, so callers cannot mutate the stored state.
    """

    def __init__(self):
        self.data: dict[str, dict] = {}
        self._lock = threading.Lock()

    def _put(self, key: str, data: dict):
        with self._lock:
            self.data[key] = copy.deepcopy(data)

    def _get(self, key: str) -> dict | None:
        with self._lock:
            value = self.data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def _list(self, prefix: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(v) for k, v in sorted(self.data.items()) if k.startswith(prefix)]

    def save_job(self, job_id: str, data: dict):
        self._put(_job_key(job_id), data)

    def load_job(self, job_id: str) -> dict | None:
        return self._get(_job_key(job_id))

    def list_jobs(self) -> list[dict]:
        return self._list("job:")

    def save_deposit(self, chain: str, depositor: str, data: dict):
        self._put(_deposit_key(chain, depositor), data)

    def load_deposit(self, chain: str, depositor: str) -> dict | None:
        return self._get(_deposit_key(chain, depositor))

    def list_deposits(self) -> list[dict]:
        return self._list("deposit:")


class SQLiteJobStore(JobStore):
    """Store records as JSON documents in a SQLite file.

    Every write is committed immediately, so the state survives a crash
    right after a transition.
    """

    def __init__(self, path: Path):
        """
        :param path:
            SQLite database file. Parent directories are created.
        """
        assert isinstance(path, Path), f"Expected Path, got {type(path)}"
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.kv = JSONKeyValueStore(path, autocommit=True)
        logger.info("Using job store %s", path)

    def __repr__(self):
        return f"<SQLiteJobStore {self.path}>"

    def close(self):
        self.kv.close()

    def save_job(self, job_id: str, data: dict):
        self.kv[_job_key(job_id)] = data

    def load_job(self, job_id: str) -> dict | None:
        return self.kv.get(_job_key(job_id))

    def list_jobs(self) -> list[dict]:
        return [v for _, v in self.kv.iter_prefix("job:")]

    def save_deposit(self, chain: str, depositor: str, data: dict):
        self.kv[_deposit_key(chain, depositor)] = data

    def load_deposit(self, chain: str, depositor: str) -> dict | None:
        return self.kv.get(_deposit_key(chain, depositor))

    def list_deposits(self) -> list[dict]:
        return [v for _, v in self.kv.iter_prefix("deposit:")]
