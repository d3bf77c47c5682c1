# net/transport.py
from __future__ import annotations

import ipaddress
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.fields import RequestField
from urllib3.filepost import choose_boundary

CHUNK_BYTES = 8 * 1024

ProgressFn = Callable[[int, int], None]  # (bytes acknowledged so far incl. offset, file size)


# ----------------- errors -----------------------


class TransportError(Exception):
    """Base for transfer failures. Raised as-is it is not worth retrying."""


class RecoverableTransportError(TransportError):
    """Timeouts, refused/reset connections, DNS, generic I/O."""

    def __init__(self, message: str, committed: int = 0):
        super().__init__(message)
        self.committed = committed  # file bytes the transfer got through before failing


class StreamTruncatedError(TransportError):
    """The connection ended mid-stream; the server's view of the file is unknown."""


class TransferCancelled(TransportError):
    pass


# ----------------- endpoint -----------------------


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    @classmethod
    def parse(cls, host: str | None, port: str | int | None) -> Endpoint:
        h = (host or "").strip()
        if not h:
            raise ValueError("server host is empty")
        if h != "localhost":
            try:
                ipaddress.IPv4Address(h)
            except ValueError:
                raise ValueError(f"invalid server host {h!r}: expected localhost or an IPv4 address") from None
        try:
            p = int(str(port).strip())
        except ValueError:
            raise ValueError(f"invalid server port {port!r}") from None
        if not 1 <= p <= 65535:
            raise ValueError(f"server port out of range: {p}")
        return cls(h, p)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TransferRequest:
    path: Path
    offset: int
    size: int

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def remaining(self) -> int:
        return self.size - self.offset


@dataclass(frozen=True)
class TransferResponse:
    status: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    def send(
        self,
        endpoint: Endpoint,
        request: TransferRequest,
        *,
        cancel: threading.Event,
        on_progress: ProgressFn | None = None,
    ) -> TransferResponse: ...

    def ping(self, endpoint: Endpoint, timeout_s: float) -> TransferResponse: ...

    def release_idle(self) -> None: ...


# ----------------- multipart body -----------------------


def _part(boundary: str, name: str, data: bytes = b"", filename: str | None = None, content_type=None) -> bytes:
    rf = RequestField(name=name, data=data, filename=filename)
    rf.make_multipart(content_type=content_type)
    return f"--{boundary}\r\n".encode() + rf.render_headers().encode("latin-1") + data


class MultipartFileBody:
    """
    Streamed multipart/form-data body: small text fields, then the file from
    `offset` to the end, read in chunks so a cancel request is noticed
    between chunks.
    """

    def __init__(
        self,
        request: TransferRequest,
        *,
        cancel: threading.Event,
        on_progress: ProgressFn | None = None,
        boundary: str | None = None,
        chunk_bytes: int = CHUNK_BYTES,
    ):
        self.request = request
        self.boundary = boundary or choose_boundary()
        self.cancel, self.on_progress, self.chunk_bytes = cancel, on_progress, chunk_bytes
        b = self.boundary
        self._head = b"".join(
            [
                _part(b, "fileName", request.file_name.encode("utf-8")) + b"\r\n",
                _part(b, "fileSize", str(request.size).encode()) + b"\r\n",
                _part(b, "uploadedBytes", str(request.offset).encode()) + b"\r\n",
                _part(b, "file", filename=request.file_name, content_type="application/octet-stream"),
            ]
        )
        self._tail = f"\r\n--{b}--\r\n".encode()
        self._pending = self._head
        self._fp = None
        self._tail_sent = False
        self.sent = 0  # file bytes handed to the connection

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return len(self._head) + self.request.remaining + len(self._tail)

    def read(self, n: int = -1) -> bytes:
        if self.cancel.is_set():
            raise TransferCancelled(self.request.file_name)
        if n is None or n < 0:
            n = self.chunk_bytes
        if self._pending:
            out, self._pending = self._pending[:n], self._pending[n:]
            return out
        if self.sent < self.request.remaining:
            if self._fp is None:
                self._fp = open(self.request.path, "rb")
                self._fp.seek(self.request.offset)
            chunk = self._fp.read(min(n, self.request.remaining - self.sent))
            if not chunk:
                raise RecoverableTransportError("file shrank during upload", committed=self.sent)
            self.sent += len(chunk)
            if self.on_progress is not None:
                self.on_progress(self.request.offset + self.sent, self.request.size)
            return chunk
        self.close()
        if not self._tail_sent:
            self._tail_sent = True
            return self._tail
        return b""

    def __iter__(self):
        while chunk := self.read(self.chunk_bytes):
            yield chunk

    def close(self) -> None:
        if self._fp is not None:
            self._fp.close()
            self._fp = None


# ----------------- requests transport -----------------------


_NOT_RETRYABLE = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidHeader,
)


def _is_truncation(exc: BaseException) -> bool:
    if isinstance(exc, requests.exceptions.ChunkedEncodingError):
        return True
    text = str(exc)
    return "IncompleteRead" in text or "unexpected end of stream" in text.lower()


class RequestsTransport:
    """HTTP transport on a shared requests.Session. Retries are the coordinator's job, not urllib3's."""

    def __init__(
        self,
        *,
        connect_timeout_s: float = 30.0,
        read_timeout_s: float = 60.0,
        pool_maxsize: int = 5,
        session: requests.Session | None = None,
    ):
        self.timeout = (connect_timeout_s, read_timeout_s)
        self.session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_maxsize, max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def send(
        self,
        endpoint: Endpoint,
        request: TransferRequest,
        *,
        cancel: threading.Event,
        on_progress: ProgressFn | None = None,
    ) -> TransferResponse:
        body = MultipartFileBody(request, cancel=cancel, on_progress=on_progress)
        headers = {"Content-Type": body.content_type, "Content-Length": str(len(body))}
        if request.offset > 0:
            headers["Range"] = f"bytes={request.offset}-{request.size - 1}"
        try:
            resp = self.session.post(
                f"{endpoint.base_url}/upload", data=body, headers=headers, timeout=self.timeout
            )
            return TransferResponse(resp.status_code, resp.text)
        except TransportError:
            raise
        except requests.RequestException as exc:
            if cancel.is_set():
                raise TransferCancelled(request.file_name) from exc
            if _is_truncation(exc):
                raise StreamTruncatedError(str(exc)) from exc
            if isinstance(exc, _NOT_RETRYABLE):
                raise TransportError(str(exc)) from exc
            raise RecoverableTransportError(str(exc), committed=body.sent) from exc
        except OSError as exc:
            raise RecoverableTransportError(str(exc), committed=body.sent) from exc
        finally:
            body.close()

    def ping(self, endpoint: Endpoint, timeout_s: float) -> TransferResponse:
        try:
            resp = self.session.get(f"{endpoint.base_url}/ping", timeout=(timeout_s, timeout_s))
        except requests.Timeout as exc:
            raise RecoverableTransportError(f"timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise RecoverableTransportError(str(exc)) from exc
        return TransferResponse(resp.status_code, resp.text)

    def release_idle(self) -> None:
        # pools are recreated lazily on the next request
        for adapter in self.session.adapters.values():
            adapter.close()

    def close(self) -> None:
        self.session.close()
