"""
Post-Parse Pipeline Module
Ordered transform steps applied to a freshly parsed message

Steps run one after another in registration order; a later step may rely on
what an earlier one did. The HTML sanitizer is appended at run time so no
caller-supplied configuration can remove or reorder it.
"""

import logging
from concurrent.futures import Future
from typing import Callable, Iterable, List, Optional

from .errors import PipelineError
from .message_data import StructuredMessage
from ..utils.sanitization import sanitize_html

logger = logging.getLogger(__name__)

Step = Callable[[StructuredMessage], Optional[object]]


def make_html_safe(message: StructuredMessage, sanitizer: Callable[[Optional[str]], str] = sanitize_html) -> None:
    """Replace ``message.html`` with its sanitized form."""
    if message.html is not None:
        message.html = sanitizer(message.html)


class PostParsePipeline:
    """
    Runs post-parse steps over a StructuredMessage

    A step is ``step(message)`` and mutates the message in place. An
    asynchronous step returns a ``concurrent.futures.Future``; the pipeline
    waits on it before moving on. Returning a different StructuredMessage
    is a contract violation.

    Args:
        steps: Initial caller steps, in order
        sanitizer: HTML sanitizer used by the final, always-present step
    """

    def __init__(self, steps: Optional[Iterable[Step]] = None,
                 sanitizer: Callable[[Optional[str]], str] = sanitize_html):
        self._steps: List[Step] = list(steps or [])
        self._sanitizer = sanitizer

    def add_step(self, step: Step) -> None:
        if not callable(step):
            raise TypeError(f"Post-parse step must be callable, got {type(step).__name__}")
        self._steps.append(step)

    @property
    def steps(self) -> List[Step]:
        """Caller steps followed by the built-in sanitizer."""
        return list(self._steps) + [self._sanitize_step]

    def _sanitize_step(self, message: StructuredMessage) -> None:
        make_html_safe(message, self._sanitizer)

    def run(self, message: StructuredMessage) -> StructuredMessage:
        """
        Apply every step to the message

        Returns:
            The same message instance, finalized

        Raises:
            PipelineError: A step failed or tried to replace the message
        """
        for step in self.steps:
            name = getattr(step, "__name__", repr(step))
            try:
                result = step(message)
                if isinstance(result, Future):
                    result = result.result()
            except Exception as e:
                logger.error("Post-parse step %s failed: %s", name, e)
                raise PipelineError(f"Post-parse step {name} failed: {e}") from e

            if isinstance(result, StructuredMessage) and result is not message:
                raise PipelineError(
                    f"Post-parse step {name} returned a new message; steps must mutate in place"
                )
            logger.debug("Post-parse step %s done", name)
        return message
