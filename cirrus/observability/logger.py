"""Loguru-style logger backed by stdlib logging + rich.

Usage::

    from cirrus.observability.logger import logger

    log = logger.bind(component="grower")
    log.info("Launching {type} ({n} pending)", type="c5.large", n=2)
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from types import FrameType
from typing import TextIO

from rich.logging import RichHandler

_cirrus_root = logging.getLogger("cirrus")


def _caller_frame() -> FrameType:
    frame = sys._getframe(1)
    while frame.f_back is not None and frame.f_globals.get("__name__") == __name__:
        frame = frame.f_back
    return frame


def _format_message(msg: str, args: tuple[object, ...], kwargs: dict[str, object]) -> str:
    if kwargs:
        return msg.format(**kwargs)
    if args:
        return msg.format(*args)
    return msg


class BoundLogger:
    __slots__ = ("_extras",)

    def __init__(self, extras: dict[str, object] | None = None) -> None:
        self._extras = extras or {}

    def bind(self, **kwargs: object) -> BoundLogger:
        return BoundLogger({**self._extras, **kwargs})

    def _log(self, level: int, message: str, /, *args: object, **kwargs: object) -> None:
        frame = _caller_frame()
        module = frame.f_globals.get("__name__", "cirrus")
        lib_logger = logging.getLogger(module)
        if not lib_logger.isEnabledFor(level):
            return
        record = lib_logger.makeRecord(
            name=lib_logger.name,
            level=level,
            fn=frame.f_code.co_filename,
            lno=frame.f_lineno,
            msg=_format_message(message, args, kwargs),
            args=(),
            exc_info=None,
            func=frame.f_code.co_name,
        )
        record.filename = os.path.basename(frame.f_code.co_filename)
        for k, v in self._extras.items():
            setattr(record, k, v)
        lib_logger.handle(record)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.DEBUG, message, *args, **kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.INFO, message, *args, **kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.WARNING, message, *args, **kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(logging.ERROR, message, *args, **kwargs)


_handler_counter = 0
_handlers: dict[int, logging.Handler] = {}


def _make_file_handler(path: str, *, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | "
        "%(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    return handler


def _make_console_handler(level: int) -> logging.Handler:
    handler = RichHandler(
        level=level,
        show_time=True,
        show_level=True,
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    return handler


class LoguruCompat:
    def __init__(self) -> None:
        self._bound = BoundLogger()

    def bind(self, **kwargs: object) -> BoundLogger:
        return self._bound.bind(**kwargs)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.debug(message, *args, **kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.info(message, *args, **kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.warning(message, *args, **kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._bound.error(message, *args, **kwargs)

    def remove(self, handler_id: int | None = None) -> None:
        if handler_id is None:
            for h in list(_handlers.values()):
                _cirrus_root.removeHandler(h)
                h.close()
            _handlers.clear()
            return
        if h := _handlers.pop(handler_id, None):
            _cirrus_root.removeHandler(h)
            h.close()

    def add(
        self,
        sink: str | TextIO,
        *,
        level: str = "DEBUG",
        filter: str | None = None,  # noqa: A002
        max_bytes: int = 50 * 1024 * 1024,
        backup_count: int = 10,
    ) -> int:
        global _handler_counter
        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            numeric_level = logging.DEBUG

        match sink:
            case str() as path:
                handler = _make_file_handler(
                    path, level=numeric_level, max_bytes=max_bytes, backup_count=backup_count,
                )
            case _:
                handler = _make_console_handler(numeric_level)

        if filter:
            handler.addFilter(logging.Filter(filter))

        _cirrus_root.addHandler(handler)
        _handler_counter += 1
        _handlers[_handler_counter] = handler
        return _handler_counter

    def enable(self, name: str) -> None:
        target = logging.getLogger(name)
        target.disabled = False
        target.setLevel(logging.DEBUG)


logger = LoguruCompat()

_cirrus_root.setLevel(logging.DEBUG)
_cirrus_root.propagate = False
