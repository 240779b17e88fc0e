# avatar_studio/transport.py
"""
Upload transport for the compressed avatar.

The multipart body is built by httpx, then streamed back out in chunks so
byte-level progress can be reported while the request is on the wire.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from avatar_studio.errors import UploadError
from avatar_studio.logger import console

ProgressCallback = Callable[[float], None]

CHUNK_SIZE = 16 * 1024


@dataclass(frozen=True)
class UploadResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def temp_url(self) -> Optional[str]:
        return self.body.get("tempUrl")

    @property
    def file_info(self) -> Dict[str, Any]:
        return self.body.get("fileInfo") or {}


def _parse_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class UploadTransport:
    """POSTs one artifact to /upload with the caller's session token."""

    def __init__(
        self,
        base_url: str,
        session_token: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        field_name: str = "avatar",
        filename: str = "avatar.jpg",
        chunk_size: int = CHUNK_SIZE,
    ):
        self.url = f"{base_url.rstrip('/')}/upload"
        self.session_token = session_token
        self.timeout = timeout
        self.field_name = field_name
        self.filename = filename
        self.chunk_size = chunk_size
        self._client = client

    def build_body(self, data: bytes, mimetype: str) -> tuple:
        """Return (content_type_header, body_bytes) for a single-file multipart form."""
        request = httpx.Request(
            "POST",
            self.url,
            files={self.field_name: (self.filename, data, mimetype)},
        )
        return request.headers["content-type"], request.read()

    async def _stream(self, body: bytes, on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        total = len(body)
        sent = 0
        for start in range(0, total, self.chunk_size):
            chunk = body[start:start + self.chunk_size]
            yield chunk
            sent += len(chunk)
            if on_progress is not None:
                on_progress(sent / total)

    async def send(
        self,
        data: bytes,
        mimetype: str = "image/jpeg",
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Upload the artifact. Resolves on any 2xx and raises UploadError
        otherwise; the caller's artifact bytes are never modified.
        """
        content_type, body = self.build_body(data, mimetype)
        headers = {
            "x-session-token": self.session_token,
            "content-type": content_type,
            "content-length": str(len(body)),
        }

        if on_progress is not None:
            on_progress(0.0)

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url,
                    content=self._stream(body, on_progress),
                    headers=headers,
                    timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        self.url,
                        content=self._stream(body, on_progress),
                        headers=headers,
                    )
        except httpx.TimeoutException as exc:
            console.log(f"[red]Upload timed out after {self.timeout}s[/red]")
            raise UploadError("Upload timed out, please retry") from exc
        except httpx.TransportError as exc:
            console.log(f"[red]Upload failed at the network level: {exc}[/red]")
            raise UploadError("Network error, please retry later") from exc
        except httpx.HTTPError as exc:
            # Protocol-level failures such as an undecodable response body
            console.log(f"[red]Upload failed: {exc!r}[/red]")
            raise UploadError("Upload failed, please retry") from exc

        body_json = _parse_json(response)
        if not 200 <= response.status_code < 300:
            raise UploadError(
                body_json.get("message") or f"Upload failed with HTTP {response.status_code}",
                status_code=response.status_code,
                code=body_json.get("code"),
            )

        console.log(f"[green]Upload accepted ({response.status_code}, {len(data)} bytes)[/green]")
        return UploadResult(status_code=response.status_code, body=body_json)
