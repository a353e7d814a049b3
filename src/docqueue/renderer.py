"""Renderer contract consumed by the worker pool.

The queue never looks inside a payload; it hands (job type, payload) to a
Renderer and stores whatever bytes come back. Rendering itself (markup,
templates, page layout) lives outside this package.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List

from .errors import UnknownJobTypeError

RenderFunction = Callable[[Dict[str, Any]], bytes]


class Renderer(ABC):
    """Turns a job payload into document bytes.

    Implementations may be slow and may raise any exception; the worker pool
    treats every exception (and a timeout) as a failed attempt. There is no
    cancellation hook.
    """

    @abstractmethod
    def render(self, job_type: str, payload: Dict[str, Any]) -> bytes:
        pass


class RendererRegistry(Renderer):
    """Dispatches to one render function per job type."""

    def __init__(self, renderers: Dict[str, RenderFunction] = None):
        self._renderers: Dict[str, RenderFunction] = {}
        for job_type, fn in (renderers or {}).items():
            self.register(job_type, fn)

    def register(self, job_type: str, fn: RenderFunction) -> None:
        self._renderers[job_type.lower()] = fn

    @property
    def job_types(self) -> List[str]:
        return sorted(self._renderers)

    def render(self, job_type: str, payload: Dict[str, Any]) -> bytes:
        fn = self._renderers.get(job_type.lower())
        if fn is None:
            raise UnknownJobTypeError(job_type)
        return fn(payload)
