import os
import signal
import subprocess
import threading
from typing import List, Optional

from loguru import logger

from .config import MIGRATE_SCRIPT, MOVER_TERMINATE_GRACE
from .exceptions import DataMoveError, MigrationCancelled


class DataMover:
    """Runs the external data mover between two claims of a namespace."""

    def __init__(self, script: str = MIGRATE_SCRIPT, cancel_event: Optional[threading.Event] = None,
                 poll_interval: float = 1.0, terminate_grace: float = MOVER_TERMINATE_GRACE):
        self.script = script
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace

    def build_command(self, namespace: str, source: str, destination: str) -> List[str]:
        return [self.script, "-n", namespace, "-i", source, "-o", destination]

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass

    def _stop(self, proc: subprocess.Popen) -> str:
        # the mover runs in its own session, signal every process it spawned
        self._signal_group(proc, signal.SIGTERM)
        try:
            output, _ = proc.communicate(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            output, _ = proc.communicate()
        return output or ""

    def copy(self, namespace: str, source: str, destination: str):
        """Copy ``source`` into ``destination``; raises DataMoveError on failure"""
        if self.cancel_event.is_set():
            raise MigrationCancelled(f"cancelled before copying {namespace}/{source}")

        cmd = self.build_command(namespace, source, destination)
        logger.debug(f"Running data mover: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                    text=True, start_new_session=True)
        except OSError as e:
            raise DataMoveError(f"failed to launch {self.script}: {e}") from e

        while True:
            try:
                output, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event.is_set():
                    logger.warning(f"Terminating data mover for {namespace}/{source} -> {destination}")
                    output = self._stop(proc)
                    raise DataMoveError(
                        f"data mover cancelled copying {namespace}/{source} to {destination}",
                        output=output, returncode=proc.returncode,
                    )

        if proc.returncode != 0:
            raise DataMoveError(
                f"data mover exited with {proc.returncode} copying {namespace}/{source} to {destination}",
                output=output or "", returncode=proc.returncode,
            )
        logger.debug(f"Data mover finished {namespace}/{source} -> {destination}")
