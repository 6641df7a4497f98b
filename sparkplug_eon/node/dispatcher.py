"""Inbound command dispatch.

NCMD payloads are decoded and each metric is routed by exact name to the
handler registered for it. Anything the node did not declare is reported
through the observability hook and otherwise ignored.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..proto import UNREPORTED, DataType, Metric, Payload, decode_payload, describe_mismatch

logger = logging.getLogger(__name__)


class TypeMismatch(RuntimeError):
    """Raised when a command value disagrees with the handler's declared datatype."""


class DispatchEventKind(StrEnum):
    UNKNOWN_METRIC = "unknown_metric"
    TYPE_MISMATCH = "type_mismatch"
    HANDLER_ERROR = "handler_error"


@dataclass(frozen=True, slots=True)
class DispatchEvent:
    """Something the dispatcher could not act on."""

    kind: DispatchEventKind
    metric_name: str
    detail: str = ""
    error: Exception | None = None


CommandHandler = Callable[[Any, DataType], None]
ObservabilityHook = Callable[[DispatchEvent], None]


def log_event(event: DispatchEvent) -> None:
    """Default hook: log the event."""
    if event.kind is DispatchEventKind.HANDLER_ERROR:
        logger.error(
            "Command handler for %r failed: %s", event.metric_name, event.detail, exc_info=event.error
        )
    elif event.kind is DispatchEventKind.TYPE_MISMATCH:
        logger.warning("Ignoring command %r: %s", event.metric_name, event.detail)
    else:
        logger.warning("Ignoring unknown command metric %r", event.metric_name)


@dataclass(frozen=True, slots=True)
class _Registration:
    handler: CommandHandler
    datatype: DataType


class CommandDispatcher:
    """Maps command metric names to handlers."""

    def __init__(self, hook: ObservabilityHook = log_event) -> None:
        self._hook = hook
        self._handlers: dict[str, _Registration] = {}
        self._aliases: dict[int, str] = {}

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def register(self, metric_name: str, handler: CommandHandler, datatype: DataType) -> None:
        """Route commands named ``metric_name`` to ``handler``.

        The handler is called as ``handler(value, datatype)`` and only for
        values that fit ``datatype``. Registering a name again replaces
        the previous handler.
        """
        if metric_name in self._handlers:
            logger.debug("Replacing handler for %r", metric_name)
        self._handlers[metric_name] = _Registration(handler, datatype)

    def unregister(self, metric_name: str) -> None:
        self._handlers.pop(metric_name, None)

    def set_aliases(self, aliases: Mapping[int, str]) -> None:
        """Set the alias table used to name alias-only command metrics."""
        self._aliases = dict(aliases)

    def dispatch(self, command_payload: bytes | Payload) -> int:
        """Run the handlers for every metric in a command payload.

        Returns:
            The number of handlers that ran to completion.

        Raises:
            CodecError: The payload bytes could not be decoded.
        """
        if isinstance(command_payload, Payload):
            payload = command_payload
        else:
            payload = decode_payload(command_payload)

        invoked = 0
        for metric in payload.metrics:
            name = self._resolve_name(metric)
            registration = self._handlers.get(name) if name else None
            if registration is None:
                if name:
                    label = name
                elif metric.alias is not None:
                    label = f"alias {metric.alias}"
                else:
                    label = "<unnamed>"
                self._hook(DispatchEvent(DispatchEventKind.UNKNOWN_METRIC, label))
                continue

            try:
                self._check(metric, registration)
            except TypeMismatch as exc:
                self._hook(DispatchEvent(DispatchEventKind.TYPE_MISMATCH, name, str(exc), exc))
                continue

            try:
                registration.handler(metric.value, metric.datatype)
            except Exception as exc:
                self._hook(DispatchEvent(DispatchEventKind.HANDLER_ERROR, name, str(exc), exc))
                continue
            invoked += 1

        return invoked

    def _resolve_name(self, metric: Metric) -> str:
        if metric.name:
            return metric.name
        if metric.alias is not None:
            return self._aliases.get(metric.alias, "")
        return ""

    @staticmethod
    def _check(metric: Metric, registration: _Registration) -> None:
        if metric.datatype is not registration.datatype:
            raise TypeMismatch(
                f"expected {registration.datatype.name}, got {metric.datatype.name}"
            )
        if metric.value is None or metric.value is UNREPORTED:
            raise TypeMismatch(f"{registration.datatype.name} command carries no value")
        problem = describe_mismatch(registration.datatype, metric.value)
        if problem:
            raise TypeMismatch(problem)
