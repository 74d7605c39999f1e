"""
 * @file: sync_lock.py
 * @description: Межпроцессная блокировка синхронизации по сущности с heartbeat и освобождением брошенных блокировок
 * @dependencies: LockRepository, psutil, threading
 * @created: 2025-03-02
"""
import logging
import os
import socket
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional

import psutil

from catalog_sync.core.sync_config import SyncConfig, sync_config
from catalog_sync.models.sync_lock import SyncLock
from catalog_sync.repositories.lock_repository import LockRepository
from catalog_sync.schemas.sync import LockInfo

logger = logging.getLogger("sync.lock")


class LockHeartbeat(threading.Thread):
    """Фоновый поток, который каждые interval секунд обновляет heartbeat своей блокировки."""

    def __init__(self, manager: "SyncLockManager", entity: str, interval: float):
        super().__init__(name=f"sync-heartbeat-{entity}", daemon=True)
        self.manager = manager
        self.entity = entity
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                if not self.manager.update_heartbeat(self.entity):
                    logger.warning(f"Heartbeat {self.entity}: блокировка потеряна, поток остановлен")
                    return
            except Exception as e:
                logger.error(f"Heartbeat {self.entity}: ошибка обновления: {e}")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=timeout)


class SyncLockManager:
    """
    Не более одной активной синхронизации на сущность между процессами.

    Блокировка брошена, если истек ее таймаут от последнего продления, heartbeat
    старше heartbeat_timeout или процесс-владелец на этом же хосте завершился.
    Проверка процесса приблизительная: если ее нельзя выполнить (другой хост, ошибка),
    блокировка считается занятой. При lock_check_process_liveness=False остается
    только аренда по heartbeat.
    """
    def __init__(self, repository: Optional[LockRepository] = None, config: Optional[SyncConfig] = None,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 sleep: Callable[[float], None] = time.sleep,
                 liveness_probe: Optional[Callable[[int], bool]] = None):
        self.repository = repository or LockRepository()
        self.config = config or sync_config
        self._clock = clock
        self._sleep = sleep
        self._liveness_probe = liveness_probe or psutil.pid_exists
        self.pid = os.getpid()
        self.host = socket.gethostname()
        self.owner_token = uuid.uuid4().hex
        self._heartbeats: Dict[str, LockHeartbeat] = {}

    def acquire(self, entity: str, timeout: Optional[int] = None, retries: Optional[int] = None,
                heartbeat: Optional[bool] = None) -> bool:
        """
        Пытается захватить блокировку сущности.

        Брошенная блокировка удаляется, и захват повторяется сразу. Занятая живым
        владельцем ожидает lock_retry_delay_seconds и повторяется до retries раз.
        """
        timeout = timeout or self.config.lock_timeout_seconds
        retries = self.config.lock_max_retries if retries is None else retries
        heartbeat = self.config.heartbeat_enabled if heartbeat is None else heartbeat

        attempt = 0
        while True:
            now = self._clock()
            lock = SyncLock(
                entity=entity,
                owner_pid=self.pid,
                owner_host=self.host,
                owner_token=self.owner_token,
                acquired_at=now,
                refreshed_at=now,
                heartbeat_at=now,
                timeout_seconds=timeout,
            )
            if self.repository.insert(lock):
                logger.info(f"Блокировка {entity} получена (pid={self.pid}, timeout={timeout}с)")
                if heartbeat:
                    self._start_heartbeat(entity)
                return True

            existing = self.repository.get(entity)
            if existing is None:
                # Удалена между вставкой и чтением
                continue
            if existing.owner_token == self.owner_token:
                self.repository.touch(entity, self.owner_token, now)
                return True

            reason = self.abandon_reason(existing)
            if reason:
                logger.warning(
                    f"Блокировка {entity} процесса {existing.owner_pid}@{existing.owner_host} брошена ({reason}), "
                    f"освобождаем"
                )
                self.repository.delete(entity, owner_token=existing.owner_token)
                continue

            if attempt >= retries:
                logger.warning(
                    f"Не удалось получить блокировку {entity} за {attempt + 1} попыток: "
                    f"владелец {existing.owner_pid}@{existing.owner_host}"
                )
                return False
            attempt += 1
            logger.info(f"Блокировка {entity} занята, повтор {attempt}/{retries} через "
                        f"{self.config.lock_retry_delay_seconds}с")
            self._sleep(self.config.lock_retry_delay_seconds)

    def release(self, entity: str) -> bool:
        self._stop_heartbeat(entity)
        released = self.repository.delete(entity, owner_token=self.owner_token)
        if released:
            logger.info(f"Блокировка {entity} освобождена")
        return released

    def is_locked(self, entity: str) -> bool:
        lock = self.repository.get(entity)
        if lock is None:
            return False
        return self.abandon_reason(lock) is None

    def owns(self, entity: str) -> bool:
        lock = self.repository.get(entity)
        return lock is not None and lock.owner_token == self.owner_token

    def update_heartbeat(self, entity: str) -> bool:
        """Обновляет heartbeat и продлевает таймаут своей блокировки."""
        updated = self.repository.touch(entity, self.owner_token, self._clock())
        if not updated:
            logger.warning(f"Heartbeat {entity}: блокировка не принадлежит этому процессу")
        return updated

    def abandon_reason(self, lock: SyncLock) -> Optional[str]:
        now = self._clock()
        age = (now - lock.refreshed_at).total_seconds()
        if age > lock.timeout_seconds:
            return f"таймаут {lock.timeout_seconds}с истек {age:.0f}с назад"
        heartbeat_age = (now - lock.heartbeat_at).total_seconds()
        if heartbeat_age > self.config.heartbeat_timeout_seconds:
            return f"heartbeat {heartbeat_age:.0f}с назад"
        if self.config.lock_check_process_liveness and not self.is_owner_alive(lock):
            return f"процесс {lock.owner_pid} не существует"
        return None

    def is_owner_alive(self, lock: SyncLock) -> bool:
        if lock.owner_host != self.host:
            # Процесс на другом хосте проверить нельзя
            return True
        try:
            return bool(self._liveness_probe(lock.owner_pid))
        except Exception as e:
            logger.warning(f"Не удалось проверить процесс {lock.owner_pid}: {e}; считаем его живым")
            return True

    def get_lock_info(self, entity: str) -> LockInfo:
        lock = self.repository.get(entity)
        if lock is None:
            return LockInfo(entity=entity)
        now = self._clock()
        return LockInfo(
            entity=entity,
            locked=True,
            owner_pid=lock.owner_pid,
            owner_host=lock.owner_host,
            owned_by_me=lock.owner_token == self.owner_token,
            owner_alive=self.is_owner_alive(lock),
            age_seconds=(now - lock.acquired_at).total_seconds(),
            heartbeat_age_seconds=(now - lock.heartbeat_at).total_seconds(),
            expired=self.abandon_reason(lock) is not None,
        )

    def _start_heartbeat(self, entity: str):
        self._stop_heartbeat(entity)
        worker = LockHeartbeat(self, entity, self.config.heartbeat_interval_seconds)
        self._heartbeats[entity] = worker
        worker.start()

    def _stop_heartbeat(self, entity: str):
        worker = self._heartbeats.pop(entity, None)
        if worker is not None:
            worker.stop()

    def shutdown(self):
        for entity in list(self._heartbeats):
            self._stop_heartbeat(entity)
