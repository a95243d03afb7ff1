"""
Ejecución en segundo plano sobre el event loop de la aplicación.

No hay cola de trabajos ni workers dedicados: las tareas se agendan en el
mismo loop y el llamador no espera. El timeout solo determina hasta cuándo
se vigila la tarea; la tarea en sí nunca se cancela.
"""
import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from ..core.config import settings, utc_now

logger = logging.getLogger(__name__)

TaskLike = Union[Awaitable, Callable[[], object]]

# Referencias fuertes: el loop solo guarda referencias débiles a las tareas
_background_tasks: Set[asyncio.Task] = set()

STACK_LINES = 3


def _short_stack(exc: BaseException) -> str:
    lines = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).splitlines()
    return "\n".join(lines[:STACK_LINES])


def _log_outcome(name: str, task: asyncio.Task) -> str:
    if task.cancelled():
        logger.warning(f"Background task '{name}' was cancelled")
        return "cancelled"
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task '{name}' failed: {exc}\n{_short_stack(exc)}")
        return "failed"
    logger.debug(f"Background task '{name}' completed")
    return "completed"


def _keep(task: asyncio.Task) -> asyncio.Task:
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def _watch(name: str, task: asyncio.Task, timeout: float) -> str:
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if not done:
        logger.warning(f"Background task '{name}' still running after {timeout}s, no longer waiting")
        task.add_done_callback(lambda t: _log_outcome(name, t))
        return "timeout"
    return _log_outcome(name, task)


def run_background_task(name: str, task: TaskLike, timeout: Optional[float] = None) -> asyncio.Task:
    """
    Agenda `task` (corrutina o función sin argumentos) sin bloquear al llamador.

    Devuelve la tarea vigilante, que termina con "completed", "failed",
    "cancelled" o "timeout". Nunca relanza el error de la tarea.
    Debe llamarse con un loop en ejecución.
    """
    if timeout is None:
        timeout = settings.BACKGROUND_TASK_TIMEOUT_SECONDS
    loop = asyncio.get_running_loop()

    if asyncio.iscoroutine(task):
        coro = task
    elif callable(task):
        coro = asyncio.to_thread(task)
    else:
        raise TypeError(f"Background task '{name}' must be a coroutine or a callable")

    inner = _keep(loop.create_task(coro, name=name))
    return _keep(loop.create_task(_watch(name, inner, timeout), name=f"{name}:watch"))


def pending_background_tasks() -> int:
    return len(_background_tasks)


# ===================== TAREAS DIARIAS =====================

@dataclass
class DailyJob:
    name: str
    hour: int
    func: Callable[[], object]
    last_run: Optional[date] = None


class DailyJobScheduler:
    """
    Corre trabajos con nombre una vez al día a una hora fija (UTC).
    Se inicia en el arranque de la aplicación:

        scheduler.add_job("missing_docs", 9, job)
        asyncio.create_task(scheduler.start())
    """

    def __init__(self, poll_interval_seconds: float = 60.0):
        self.poll_interval = poll_interval_seconds
        self._jobs: Dict[str, DailyJob] = {}
        self._running = False

    def add_job(self, name: str, hour: int, func: Callable[[], object]) -> None:
        if not 0 <= hour <= 23:
            raise ValueError(f"Invalid hour for job '{name}': {hour}")
        self._jobs[name] = DailyJob(name=name, hour=hour, func=func)
        logger.info(f"Daily job '{name}' registered at {hour:02d}:00 UTC")

    @property
    def jobs(self) -> List[str]:
        return list(self._jobs)

    @property
    def running(self) -> bool:
        return self._running

    def due_jobs(self, now: Optional[datetime] = None) -> List[DailyJob]:
        now = now or utc_now()
        return [
            job for job in self._jobs.values()
            if now.hour == job.hour and job.last_run != now.date()
        ]

    async def _run_job(self, job: DailyJob) -> None:
        try:
            if asyncio.iscoroutinefunction(job.func):
                await job.func()
            else:
                # Los trabajos síncronos (acceso a BD) no bloquean el loop
                await asyncio.to_thread(job.func)
        except Exception as e:
            logger.error(f"Daily job '{job.name}' failed: {e}\n{_short_stack(e)}")

    async def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Corre los trabajos que tocan ahora. Devuelve sus nombres."""
        now = now or utc_now()
        ran = []
        for job in self.due_jobs(now):
            job.last_run = now.date()
            logger.info(f"Running daily job '{job.name}'")
            await self._run_job(job)
            ran.append(job.name)
        return ran

    async def start(self) -> None:
        if self._running:
            logger.warning("DailyJobScheduler already running")
            return

        self._running = True
        logger.info("DailyJobScheduler started")
        try:
            while self._running:
                await self.run_pending()
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            self._running = False
            raise
        except Exception as e:
            logger.error(f"DailyJobScheduler crashed: {e}")
            self._running = False

    def stop(self) -> None:
        self._running = False
        logger.info("DailyJobScheduler stopped")
