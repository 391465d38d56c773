"""Single-flight advisory locks backed by sentinel files.

A lock file holds the ISO-8601 UTC time it was taken. Creation is atomic
(O_CREAT | O_EXCL), so two holders can never both succeed. A lock older than
the staleness window is presumed abandoned: it is deleted and taken again.
A file whose content cannot be parsed is judged by its mtime instead, since
a fresh holder may not have written its timestamp yet.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Callable

from .db import log_event
from .errors import LockHeldError
from .settings import settings


Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(raw: str) -> datetime | None:
    raw = raw.strip()
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def read_timestamp(path: str) -> datetime | None:
    try:
        with open(path, encoding="utf-8") as f:
            return parse_timestamp(f.read())
    except FileNotFoundError:
        return None


class AdvisoryLock:
    def __init__(self, path: str, stale_after_s: int | None = None, clock: Clock = _utc_now):
        self.path = path
        self.stale_after_s = settings.lock_stale_s if stale_after_s is None else stale_after_s
        self.clock = clock
        self.acquired = False

    def holder_timestamp(self) -> str | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                return f.read().strip() or None
        except FileNotFoundError:
            return None

    def is_stale(self) -> bool:
        ts = read_timestamp(self.path)
        if ts is None:
            try:
                ts = datetime.fromtimestamp(os.path.getmtime(self.path), timezone.utc)
            except FileNotFoundError:
                return True
        return (self.clock() - ts).total_seconds() > self.stale_after_s

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(format_timestamp(self.clock()))
        return True

    def acquire(self) -> None:
        if self.acquired:
            return
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        if not self._try_create():
            if not self.is_stale():
                raise LockHeldError(self.path, self.holder_timestamp())
            log_event("WARN", f"Stale lock {self.path} detected, reclaiming it.")
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
            if not self._try_create():
                # Someone else reclaimed it between our delete and create.
                raise LockHeldError(self.path, self.holder_timestamp())

        self.acquired = True
        log_event("DEBUG", f"Lock {self.path} acquired.")

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        self.acquired = False
        log_event("DEBUG", f"Lock {self.path} released.")

    def __enter__(self) -> "AdvisoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path(name: str) -> str:
    return os.path.join(settings.lock_dir, f"{name}.lock")


def last_success(path: str) -> datetime | None:
    return read_timestamp(path)


def mark_success(path: str, clock: Clock = _utc_now) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(format_timestamp(clock()))
