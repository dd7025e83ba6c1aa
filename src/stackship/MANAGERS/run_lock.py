"""
Run-scoped lease that serialises overlapping reconciliations of one stack.
"""
import json
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import psutil
from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


class _LeaseHeld(Exception):
    def __init__(self, holder: Dict[str, Any]):
        super().__init__(f"lease held by pid {holder.get('pid')} on {holder.get('hostname')}")
        self.holder = holder


class RunLock:
    """
    A lease file created atomically next to the stack. A lease is stale once
    it expires or once its holder process is gone from this host; stale
    leases are taken over.

    Usable as a context manager::

        with RunLock(path, lease_seconds=900, wait_seconds=300):
            ...
    """

    def __init__(self, path: str, lease_seconds: float = 900.0, wait_seconds: float = 300.0,
                 poll_interval: float = 1.0):
        """
        :param path: Lease file path.
        :param lease_seconds: Lifetime of an acquired lease.
        :param wait_seconds: How long to wait for another run to finish.
        :param poll_interval: Seconds between acquisition attempts.
        """
        self.path = path
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.token is not None

    def acquire(self) -> None:
        """
        :raises LockTimeout: If another run still holds the lease after ``wait_seconds``.
        """
        retrying = Retrying(
            stop=stop_after_delay(self.wait_seconds),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_exception_type(_LeaseHeld),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._try_acquire()
        except _LeaseHeld as e:
            raise LockTimeout(f"another reconciliation is in progress: {e}")
        logger.debug("Acquired run lease %s", self.path)

    def release(self) -> None:
        """
        Removes the lease if this instance still owns it.
        """
        if not self.token:
            return
        holder = self._read(self.path)
        if holder and holder.get("token") == self.token:
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
            logger.debug("Released run lease %s", self.path)
        else:
            logger.warning("Run lease %s was taken over before release", self.path)
        self.token = None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _try_acquire(self) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if self._create():
            return
        holder = self._read(self.path)
        if not self._lease_is_stale(holder):
            raise _LeaseHeld(holder or {})
        if not self._take_over(holder):
            raise _LeaseHeld(self._read(self.path) or {})
        if not self._create():
            # Another waiter won the race for the freed lease.
            raise _LeaseHeld(self._read(self.path) or {})

    def _create(self) -> bool:
        """
        Links a fully written record into place, so the lease never exists
        without its contents.

        :return: False if a lease already exists.
        """
        token = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        record = {
            "token": token,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self.lease_seconds)).isoformat(),
        }
        staging = f"{self.path}.{token}.tmp"
        with open(staging, "w") as f:
            json.dump(record, f)
        try:
            os.link(staging, self.path)
        except FileExistsError:
            return False
        finally:
            os.unlink(staging)
        self.token = token
        return True

    def _lease_is_stale(self, holder: Optional[Dict[str, Any]]) -> bool:
        if holder is not None:
            return self.is_stale(holder)
        # Unreadable: held until the file is older than a whole lease period.
        try:
            age = time.time() - os.path.getmtime(self.path)
        except FileNotFoundError:
            return True
        return age > self.lease_seconds

    def _take_over(self, holder: Optional[Dict[str, Any]]) -> bool:
        """
        Moves a stale lease aside under a unique name. Only the waiter whose
        rename moved the stale record may create the next lease.
        """
        aside = f"{self.path}.{uuid.uuid4().hex}.stale"
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True
        try:
            if self._read(aside) != holder:
                # A fresh lease replaced the stale one in between; put it back.
                try:
                    os.link(aside, self.path)
                except FileExistsError:
                    logger.warning("Could not restore run lease %s", self.path)
                return False
        finally:
            os.unlink(aside)
        logger.warning("Took over stale run lease %s", self.path)
        return True

    @staticmethod
    def _read(path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r") as f:
                record = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError, OSError):
            return None
        return record if isinstance(record, dict) else None

    @staticmethod
    def is_stale(holder: Dict[str, Any]) -> bool:
        """
        True when a lease record has expired or its holder process has exited.
        """
        try:
            expires = datetime.fromisoformat(holder["expires_at"])
        except (KeyError, TypeError, ValueError):
            return True
        if expires <= datetime.now(timezone.utc):
            return True
        if holder.get("hostname") == socket.gethostname():
            pid = holder.get("pid")
            if not isinstance(pid, int) or not psutil.pid_exists(pid):
                return True
        return False
