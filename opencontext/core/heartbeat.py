"""
Heartbeat - periodic scheduler for the self-improvement tick.

One Heartbeat drives the tasks of one store; only one should be active per
store at a time.
"""

import threading
import time
from typing import Callable, Dict, Optional

from util.logging import logger


class Heartbeat:
    """Cooperative interval scheduler."""

    def __init__(self, enabled: bool = True, poll_interval: float = 0.1):
        self.enabled = enabled
        self.poll_interval = poll_interval
        self.tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
        self.running = False
        self.shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def register_task(self, name: str, interval_sec: int, func: Callable):
        """
        Register a task to be executed periodically.

        Args:
            name: Unique task identifier
            interval_sec: How often to run this task in seconds
            func: Function to call
        """
        if not callable(func):
            raise ValueError(f"Task function must be callable: {func}")

        if interval_sec < 1:
            raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

        with self._lock:
            self.tasks[name] = {
                "func": func,
                "interval": interval_sec,
                "last_run": None
            }

        logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")

    def unregister_task(self, name: str):
        """Remove a task from the registry."""
        with self._lock:
            removed = self.tasks.pop(name, None)
        if removed is not None:
            logger.info(f"Unregistered heartbeat task '{name}'")

    def list_tasks(self):
        """Return list of registered task names."""
        return list(self.tasks.keys())

    def should_run_task(self, task_info: Dict) -> bool:
        """Check if a task should run this cycle."""
        if task_info["last_run"] is None:
            return True  # Run immediately if never run

        elapsed = time.monotonic() - task_info["last_run"]
        return elapsed >= task_info["interval"]

    def run_task(self, name: str, task_info: Dict):
        """Execute a task and record timing."""
        start_time = time.monotonic()
        try:
            task_info["func"]()
        except Exception as e:
            duration = time.monotonic() - start_time
            raise RuntimeError(f"Task '{name}' failed after {duration:.2f}s: {e}") from e
        finally:
            # Failed runs also wait a full interval before retrying
            task_info["last_run"] = time.monotonic()

        logger.log_operation("heartbeat.task", "completed", {
            "task": name,
            "duration_ms": round((task_info["last_run"] - start_time) * 1000, 2)
        })

    def run_pending(self) -> int:
        """Run every task that is due; returns how many ran."""
        ran = 0
        with self._lock:
            due = [(name, info) for name, info in self.tasks.items() if self.should_run_task(info)]

        for name, task_info in due:
            try:
                self.run_task(name, task_info)
            except RuntimeError as e:
                # Error isolation - log error but continue loop
                logger.error(f"Heartbeat task '{name}' failed: {e}")
            ran += 1
        return ran

    def start(self):
        """
        Run the heartbeat loop in the calling thread until stop() is called.

        Uses time.monotonic() for interval timing.
        """
        if not self.enabled:
            logger.info("Heartbeat disabled (OPENCONTEXT_BACKGROUND=false). Skipping start.")
            return

        if self.running:
            raise RuntimeError("Heartbeat already running")

        self.running = True
        self.shutdown_event.clear()
        logger.info(f"Starting heartbeat loop with tasks: {self.list_tasks()}")

        try:
            while self.running and not self.shutdown_event.is_set():
                self.run_pending()
                self.shutdown_event.wait(self.poll_interval)
        except KeyboardInterrupt:
            logger.info("Heartbeat interrupted by user")
        finally:
            self.running = False
            logger.info("Heartbeat loop stopped")

    def start_background(self) -> Optional[threading.Thread]:
        """Run the loop in a daemon thread."""
        if not self.enabled:
            logger.info("Heartbeat disabled (OPENCONTEXT_BACKGROUND=false). Skipping start.")
            return None

        self._thread = threading.Thread(target=self.start, name="opencontext-heartbeat", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 2.0):
        """Stop the heartbeat loop gracefully."""
        self.running = False
        self.shutdown_event.set()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            self._thread = None

    def reset_task(self, name: str):
        """Reset a task's last_run time to force immediate execution."""
        if name in self.tasks:
            self.tasks[name]["last_run"] = None

    def get_status(self):
        """Return current heartbeat status for monitoring."""
        if not self.enabled:
            return {"status": "disabled", "reason": "OPENCONTEXT_BACKGROUND=false"}

        return {
            "status": "running" if self.running else "stopped",
            "tasks": {
                name: {
                    "interval_sec": info["interval"],
                    "last_run": info["last_run"],
                    "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
                }
                for name, info in self.tasks.items()
            }
        }
