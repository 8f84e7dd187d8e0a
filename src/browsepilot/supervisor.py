"""
Process supervisor for running several agent instances side by side.

Instances share nothing. The supervisor only staggers their start-up so
browser launches do not all land at once, prefixes their output with the
instance name, and restarts an instance after a cool-down when it exits.
"""

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Any

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


@dataclass
class AppSpec:
    """One supervised command and how many copies to run."""
    name: str
    command: list[str]
    instances: int = 1
    stagger_delay: float = 10.0
    autorestart: bool = True
    restart_delay: float = 5.0
    env_file: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ManagedProcess:
    """A single instance slot."""
    app: AppSpec
    instance: int
    process: Any = None
    restart_at: float | None = None
    restarts: int = 0

    @property
    def name(self) -> str:
        return f"{self.app.name}-{self.instance}"


class Supervisor:
    """Launches, watches and restarts instances of one or more AppSpecs."""

    def __init__(
        self,
        apps: list[AppSpec],
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.apps = apps
        self.managed: list[ManagedProcess] = []
        self._popen = popen
        self._clock = clock
        self._sleep = sleep
        self._stopping = False

    def build_env(self, managed: ManagedProcess) -> dict[str, str]:
        env = dict(os.environ)
        if managed.app.env_file:
            values = dotenv_values(managed.app.env_file)
            env.update({k: v for k, v in values.items() if v is not None})
        env.update(managed.app.env)
        env["INSTANCE_ID"] = str(managed.instance)
        env["PROCESS_NAME"] = managed.name
        return env

    def start_instance(self, managed: ManagedProcess) -> None:
        logger.info(f"[{managed.name}] Starting: {' '.join(managed.app.command)}")
        managed.process = self._popen(
            managed.app.command,
            cwd=managed.app.cwd,
            env=self.build_env(managed),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        managed.restart_at = None
        stream = getattr(managed.process, "stdout", None)
        if stream is not None:
            threading.Thread(
                target=self._pump_output,
                args=(managed.name, stream),
                daemon=True,
            ).start()

    @staticmethod
    def _pump_output(name: str, stream: IO[str]) -> None:
        for line in stream:
            line = line.rstrip()
            if line:
                logger.info(f"[{name}] {line}")

    def start_all(self) -> None:
        """Start every instance, pausing stagger_delay between launches of an app."""
        for app in self.apps:
            for instance in range(1, app.instances + 1):
                if self._stopping:
                    return
                managed = ManagedProcess(app=app, instance=instance)
                self.managed.append(managed)
                self.start_instance(managed)
                if instance < app.instances:
                    logger.info(f"Waiting {app.stagger_delay:.0f}s before starting the next instance")
                    self._sleep(app.stagger_delay)

    def poll_once(self) -> None:
        """Reap exited instances and start any whose cool-down has passed."""
        now = self._clock()
        for managed in self.managed:
            if managed.process is not None:
                code = managed.process.poll()
                if code is None:
                    continue
                logger.info(f"[{managed.name}] Exited with code {code}")
                managed.process = None
                if managed.app.autorestart and not self._stopping:
                    managed.restart_at = now + managed.app.restart_delay
                    logger.info(f"[{managed.name}] Restarting in {managed.app.restart_delay:.0f}s")
            elif managed.restart_at is not None and now >= managed.restart_at and not self._stopping:
                managed.restarts += 1
                self.start_instance(managed)

    @property
    def active(self) -> bool:
        return any(m.process is not None or m.restart_at is not None for m in self.managed)

    def run(self, poll_interval: float = 1.0) -> None:
        """Start everything and supervise until interrupted or nothing is left to run."""
        try:
            self.start_all()
            while self.active and not self._stopping:
                self._sleep(poll_interval)
                self.poll_once()
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def stop(self, timeout: float = 10.0) -> None:
        """Terminate all running instances, killing any that do not exit in time."""
        self._stopping = True
        for managed in self.managed:
            process = managed.process
            managed.restart_at = None
            if process is None or process.poll() is not None:
                continue
            logger.info(f"[{managed.name}] Stopping")
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"[{managed.name}] Did not exit, killing")
                process.kill()
