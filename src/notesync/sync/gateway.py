"""Remote note API client.

Thin request/response wrapper over the backend note endpoints:

- POST   /notes          create
- PUT    /notes/{id}     version-conditioned update (409 on conflict)
- DELETE /notes/{id}     delete
- GET    /notes          list the identity's notes

No retry or queueing happens here; failures are classified into
retryable (NetworkError) and non-retryable (SemanticError) errors, and
version conflicts are raised with the server's copy attached.
"""

from typing import Any, Optional

import requests

from ..db.schemas import NoteSnapshot, RemoteNote


class GatewayError(Exception):
    """Base exception for remote note API errors."""

    pass


class NetworkError(GatewayError):
    """Transient failure: connection problems, timeouts, 429 and 5xx."""

    pass


class SemanticError(GatewayError):
    """Non-retryable rejection of a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class VersionConflictError(GatewayError):
    """Server holds a newer version than the one the update was based on."""

    def __init__(self, remote_note: RemoteNote):
        self.remote_note = remote_note
        super().__init__(
            f"Version conflict on note {remote_note.id} (server v{remote_note.version})"
        )


class RemoteGateway:
    """Client for the remote note API."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10,
    ):
        """Initialize client.

        Args:
            base_url: API root, e.g. https://api.example.com
            auth_token: Bearer token issued by the auth subsystem
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if auth_token:
            self._session.headers["Authorization"] = f"Bearer {auth_token}"

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> requests.Response:
        """Send a request and classify transport failures."""
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, json=json, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise NetworkError(f"{method} {path} timed out")
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"{method} {path} connection failed: {e}")
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"{method} {path} returned HTTP {response.status_code}")
        return response

    def _raise_for_status(self, response: requests.Response, action: str) -> None:
        if response.status_code >= 400:
            raise SemanticError(
                f"{action} rejected: HTTP {response.status_code} {_error_message(response)}",
                status_code=response.status_code,
            )

    # ========================================================================
    # Note Operations
    # ========================================================================

    def create_note(self, note: NoteSnapshot) -> RemoteNote:
        """Create a note on the server.

        Args:
            note: Local note to create

        Returns:
            Server copy, carrying the server id and version
        """
        payload = _note_payload(note)
        payload["id"] = note.id
        payload["version"] = note.version
        payload["createdAt"] = note.created_at.isoformat()

        response = self._request("POST", "/notes", json=payload)
        self._raise_for_status(response, "Create")
        return _parse_note(response, fallback_id=note.id)

    def update_note(self, remote_id: str, note: NoteSnapshot) -> RemoteNote:
        """Update a note, conditioned on its version.

        Args:
            remote_id: Server id of the note
            note: Local note to push

        Returns:
            Server copy after the update

        Raises:
            VersionConflictError: Server copy is newer (HTTP 409)
        """
        payload = _note_payload(note)
        payload["version"] = note.version
        payload["baseVersion"] = note.synced_version

        response = self._request("PUT", f"/notes/{remote_id}", json=payload)
        if response.status_code == 409:
            data = _json(response)
            remote = data.get("remoteNote", data) if isinstance(data, dict) else {}
            if not isinstance(remote, dict):
                remote = {}
            remote.setdefault("id", remote_id)
            raise VersionConflictError(_validate_note(remote, response.status_code))
        self._raise_for_status(response, "Update")
        return _parse_note(response, fallback_id=remote_id)

    def delete_note(self, remote_id: str) -> None:
        """Delete a note. A note the server no longer has counts as deleted."""
        response = self._request("DELETE", f"/notes/{remote_id}")
        if response.status_code == 404:
            return
        self._raise_for_status(response, "Delete")

    def list_notes(self) -> list[RemoteNote]:
        """List all notes of the signed-in identity."""
        response = self._request("GET", "/notes")
        self._raise_for_status(response, "List")
        data = _json(response)
        if isinstance(data, dict):
            data = data.get("notes", data.get("data", []))
        if not isinstance(data, list):
            raise SemanticError(
                "Malformed server response: expected a list of notes", response.status_code
            )
        return [_validate_note(item, response.status_code) for item in data]


def _note_payload(note: NoteSnapshot) -> dict[str, Any]:
    return {
        "title": note.title,
        "content": note.body,
        "color": note.color,
        "tags": list(note.tags),
        "updatedAt": note.updated_at.isoformat(),
    }


def _json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _error_message(response: requests.Response) -> str:
    data = _json(response)
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or "")
    return ""


def _parse_note(response: requests.Response, fallback_id: str) -> RemoteNote:
    data = _json(response)
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]
    if not isinstance(data, dict):
        data = {}
    data.setdefault("id", fallback_id)
    return _validate_note(data, response.status_code)


def _validate_note(data: Any, status_code: int) -> RemoteNote:
    try:
        return RemoteNote.model_validate(data)
    except ValueError as e:
        raise SemanticError(f"Malformed server response: {e}", status_code)
