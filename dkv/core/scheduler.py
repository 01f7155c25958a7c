"""
Periodic task runner for in-process schedules (the dead-man sweep).

A cooperative loop on the event loop checks task intervals and runs tasks
when due. A failing task is logged and the loop keeps going.
"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

from ..util.logging import logger


class Scheduler:
    def __init__(self, tick_sec: float = 0.5):
        # task_name -> {func, interval, last_run (monotonic), last_run_at (epoch)}
        self.tasks: Dict[str, Dict] = {}
        self.tick_sec = tick_sec
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

    def register_task(self, name: str, interval_sec: int, func: Callable[[], Awaitable]):
        """
        Register a coroutine function to be executed periodically.

        Args:
            name: Unique task identifier
            interval_sec: How often to run this task in seconds
            func: Coroutine function taking no arguments
        """
        if not callable(func):
            raise ValueError(f"Task function must be callable: {func}")

        if interval_sec < 1:
            raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

        self.tasks[name] = {
            "func": func,
            "interval": interval_sec,
            "last_run": None,
            "last_run_at": None,
        }
        logger.info(f"Registered scheduled task '{name}' (every {interval_sec}s)")

    def unregister_task(self, name: str):
        """Remove a task from the registry."""
        if name in self.tasks:
            del self.tasks[name]
            logger.info(f"Unregistered scheduled task '{name}'")

    def list_tasks(self) -> List[str]:
        return list(self.tasks.keys())

    def should_run_task(self, task_info: Dict) -> bool:
        """Check if a task should run this cycle."""
        if task_info["last_run"] is None:
            return True  # Run immediately if never run

        elapsed = time.monotonic() - task_info["last_run"]
        return elapsed >= task_info["interval"]

    async def run_task(self, name: str, task_info: Dict):
        """Execute a task and record timing."""
        start_time = time.monotonic()

        try:
            await task_info["func"]()
        except Exception as e:
            end_time = time.monotonic()
            # failed runs still wait a full interval before the next attempt
            task_info["last_run"] = end_time
            task_info["last_run_at"] = time.time()
            logger.log_scheduler_task(name, start_time, end_time, status="failed", details={"error": str(e)})
            raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

        end_time = time.monotonic()
        task_info["last_run"] = end_time
        task_info["last_run_at"] = time.time()
        logger.log_scheduler_task(name, start_time, end_time)

    async def run(self):
        """Scheduling loop; returns when ``stop`` is called."""
        if self.running:
            raise RuntimeError("Scheduler already running")

        self.running = True
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        stop_event = self._stop_event
        logger.info(f"Starting scheduler with tasks: {self.list_tasks()}")

        try:
            while not stop_event.is_set():
                for name, task_info in list(self.tasks.items()):
                    if self.should_run_task(task_info):
                        try:
                            await self.run_task(name, task_info)
                        except RuntimeError as e:
                            # Error isolation - log error but continue loop
                            logger.error(str(e))

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.tick_sec)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            logger.info("Scheduler stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a background task on the current event loop."""
        if self.running or (self._loop_task is not None and not self._loop_task.done()):
            raise RuntimeError("Scheduler already running")
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self.run())
        return self._loop_task

    async def stop(self):
        """Stop the loop gracefully and wait for it to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        self._stop_event = None

    def get_status(self) -> Dict:
        """Return current scheduler status for monitoring. Times are epoch seconds."""
        tasks = {}
        for name, info in self.tasks.items():
            last_run_at = info.get("last_run_at")
            tasks[name] = {
                "interval_sec": info["interval"],
                "last_run": last_run_at,
                "next_run": last_run_at + info["interval"] if last_run_at is not None else None,
            }
        return {
            "status": "running" if self.running else "stopped",
            "tasks": tasks,
        }
