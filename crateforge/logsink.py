from __future__ import annotations

import logging

from .artifacts import HEAD
from .util import log_event


class LineLogSink:
    """Collects build output line by line.

    Lines are always retained so a failure report can carry the full log. In
    quiet mode nothing is emitted while the build runs; `flush` replays the
    buffer, which the executor only calls when the build failed.
    """

    def __init__(self, logger: logging.Logger, *, revision: str = HEAD, quiet: bool = False) -> None:
        self.logger = logger
        self.revision = revision
        self.quiet = quiet
        self.lines: list[str] = []
        self._partial = ""

    def write(self, chunk: str) -> None:
        data = self._partial + chunk
        *complete, self._partial = data.split("\n")
        for line in complete:
            self._line(line.rstrip("\r"))

    def close(self) -> None:
        if self._partial:
            self._line(self._partial.rstrip("\r"))
            self._partial = ""

    def _line(self, line: str) -> None:
        self.lines.append(line)
        if not self.quiet:
            self._emit(line)

    def _emit(self, line: str) -> None:
        log_event(self.logger, "build.log.line", revision=self.revision, line=line)

    def flush(self) -> None:
        if self.quiet:
            for line in self.lines:
                self._emit(line)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)
