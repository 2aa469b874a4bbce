"""HTTP transport for the tracing backend."""

from __future__ import annotations

import logging
import weakref
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import orjson
import requests
from requests import adapters as requests_adapters
from urllib3.util import Retry

from runtracer import schemas as rt_schemas
from runtracer import utils as rt_utils
from runtracer._internal._operations import SerializedRunOperation
from runtracer._internal._serde import dumps_json as _dumps_json

if TYPE_CHECKING:
    from runtracer.run_trees import Run

logger = logging.getLogger(__name__)

ID_TYPE = rt_schemas.ID_TYPE
RunPayload = Union[SerializedRunOperation, "Run", Dict[str, Any]]

DEFAULT_TIMEOUT = 10.0


def _default_retry_config(max_retries: int = 3) -> Retry:
    """Get the default retry configuration.

    Parameters
    ----------
    max_retries : int, default=3
        Total retries for connection errors and retryable statuses.

    Returns
    -------
    Retry
        The default retry configuration.
    """
    return Retry(
        total=max_retries,
        allowed_methods=None,  # Retry on all methods
        status_forcelist=[408, 425, 429, 500, 502, 503, 504],
        backoff_factor=0.5,
        raise_on_redirect=False,
        raise_on_status=False,
    )


def close_session(session: requests.Session) -> None:
    """Close the session.

    Parameters
    ----------
    session : Session
        The session to close.
    """
    logger.debug("Closing Client.session")
    session.close()


def _get_api_key(api_key: Optional[str]) -> Optional[str]:
    api_key = api_key if api_key is not None else rt_utils.get_env_var("API_KEY")
    if api_key is None or not api_key.strip():
        return None
    return api_key.strip().strip('"').strip("'")


def _get_api_url(api_url: Optional[str]) -> str:
    from runtracer.configuration import DEFAULT_ENDPOINT

    _api_url = (
        api_url
        if api_url is not None
        else rt_utils.get_env_var("ENDPOINT", DEFAULT_ENDPOINT)
    )
    if not _api_url or not _api_url.strip():
        raise rt_utils.ConfigurationError("Tracing API URL cannot be empty")
    return _api_url.strip().strip('"').strip("'").rstrip("/")


def _as_payload(item: RunPayload) -> Any:
    if isinstance(item, SerializedRunOperation):
        # Already serialized at enqueue time; embed the bytes as-is.
        return orjson.Fragment(item.payload)
    if isinstance(item, dict):
        return item
    return item.to_dict()


class Client:
    """Client for the tracing backend's REST API."""

    __slots__ = [
        "__weakref__",
        "api_url",
        "api_key",
        "tenant_id",
        "retry_config",
        "timeout",
        "session",
    ]

    def __init__(
        self,
        api_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_config: Optional[Retry] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize a Client instance.

        Parameters
        ----------
        api_url : str or None, default=None
            Base URL of the tracing API. Defaults to the RUNTRACER_ENDPOINT
            environment variable.
        api_key : str or None, default=None
            API key, sent as ``X-API-Key``. Defaults to RUNTRACER_API_KEY.
        tenant_id : str or None, default=None
            Tenant used when a call doesn't name one.
        timeout : float or None, default=None
            Request timeout in seconds.
        max_retries : int or None, default=None
            Retries for connection errors and retryable statuses.
        retry_config : Retry or None, default=None
            Full retry policy for the HTTPAdapter; overrides ``max_retries``.
        session : Session or None, default=None
            A preconfigured session to send requests with.
        """
        self.api_key = _get_api_key(api_key)
        self.api_url = _get_api_url(api_url)
        self.tenant_id = tenant_id
        self.retry_config = retry_config or _default_retry_config(
            3 if max_retries is None else max_retries
        )
        self.timeout = timeout or DEFAULT_TIMEOUT
        if session is None:
            session = requests.Session()
            # Close the session when the client is garbage collected
            weakref.finalize(self, close_session, session)
            adapter = requests_adapters.HTTPAdapter(max_retries=self.retry_config)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def __repr__(self) -> str:
        return f"Client (API URL: {self.api_url})"

    def _headers(self, tenant_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        tenant_id = tenant_id or self.tenant_id
        if tenant_id:
            headers["X-Tenant-Id"] = str(tenant_id)
        return headers

    def request_with_retries(
        self,
        method: str,
        path: str,
        *,
        tenant_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> requests.Response:
        """Send a request; transport-level retries come from the adapter.

        Parameters
        ----------
        method : str
            The HTTP request method.
        path : str
            Path relative to ``api_url``.
        tenant_id : str or None, default=None
            Tenant to route the request to.
        params : dict or None, default=None
            The query parameters.
        body : Any, default=None
            JSON body, serialized with orjson.

        Returns
        -------
        Response
            The response object.

        Raises
        ------
        TransportError
            If the request fails or the backend returns an error status.
        """
        url = f"{self.api_url}{path}"
        request_kwargs: Dict[str, Any] = {
            "headers": self._headers(tenant_id),
            "timeout": self.timeout,
        }
        if params:
            request_kwargs["params"] = params
        if body is not None:
            request_kwargs["data"] = _dumps_json(body)
        try:
            response = self.session.request(method, url, **request_kwargs)
        except requests.ConnectionError as e:
            raise rt_utils.TransportError(
                f"Connection error caused failure to {method} {url}."
                f" Please confirm RUNTRACER_ENDPOINT. {e}"
            ) from e
        except requests.Timeout as e:
            raise rt_utils.TransportError(
                f"Timed out after {self.timeout}s trying to {method} {url}. {e}"
            ) from e
        except requests.RequestException as e:
            raise rt_utils.TransportError(f"Failed to {method} {url}. {e}") from e
        rt_utils.raise_for_status_with_text(response)
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if not response.content:
            return None
        return orjson.loads(response.content)

    def batch_ingest_runs(
        self,
        create: Optional[Sequence[RunPayload]] = None,
        update: Optional[Sequence[RunPayload]] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Create and update runs in one request.

        Parameters
        ----------
        create : sequence of runs, serialized runs or dicts, optional
            Full views of runs to create.
        update : sequence of runs, serialized runs or dicts, optional
            Update views of runs to patch.
        tenant_id : str or None, default=None
            Tenant that owns every run in the batch.

        Raises
        ------
        TransportError
            If the batch could not be delivered.
        """
        if not create and not update:
            return
        body = {
            "post": [_as_payload(item) for item in create or ()],
            "patch": [_as_payload(item) for item in update or ()],
        }
        self.request_with_retries("POST", "/runs/batch", tenant_id=tenant_id, body=body)

    def create_run(self, run: Run) -> None:
        """Create a single run outside the batch pipeline."""
        self.request_with_retries(
            "POST", "/runs", tenant_id=run.tenant_id, body=run.to_dict()
        )

    def update_run(self, run: Run) -> None:
        """Patch a single run outside the batch pipeline."""
        self.request_with_retries(
            "PATCH",
            f"/runs/{run.id}",
            tenant_id=run.tenant_id,
            body=run.to_update_dict(),
        )

    def read_run(self, run_id: ID_TYPE, *, tenant_id: Optional[str] = None) -> dict:
        """Read a run by id.

        Raises
        ------
        TransportError
            With ``status_code == 404`` while the run is not yet indexed.
        """
        response = self.request_with_retries(
            "GET", f"/runs/{run_id}", tenant_id=tenant_id
        )
        return self._json(response)

    def list_examples(
        self,
        dataset_id: ID_TYPE,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[rt_schemas.Example]:
        """List the examples in a dataset."""
        params: Dict[str, Any] = {"dataset": str(dataset_id)}
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        response = self.request_with_retries(
            "GET", "/api/v1/examples", tenant_id=tenant_id, params=params
        )
        return [rt_schemas.Example(**example) for example in self._json(response) or []]

    def create_experiment(
        self,
        name: str,
        dataset_id: ID_TYPE,
        *,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> rt_schemas.TracerSession:
        """Create an experiment: a session that references a dataset."""
        body: Dict[str, Any] = {
            "name": name,
            "reference_dataset_id": str(dataset_id),
            "start_time": rt_utils.format_timestamp(rt_utils.utc_now()),
        }
        if description is not None:
            body["description"] = description
        if metadata:
            body["extra"] = metadata
        response = self.request_with_retries(
            "POST", "/api/v1/sessions", tenant_id=tenant_id, body=body
        )
        return rt_schemas.TracerSession(**self._json(response))

    def close_experiment(
        self,
        experiment_id: ID_TYPE,
        *,
        end_time: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Mark an experiment as finished."""
        self.request_with_retries(
            "PATCH",
            f"/api/v1/sessions/{experiment_id}",
            tenant_id=tenant_id,
            body={
                "end_time": end_time or rt_utils.format_timestamp(rt_utils.utc_now())
            },
        )

    def create_feedback(
        self,
        run_id: ID_TYPE,
        key: str,
        *,
        score: rt_schemas.SCORE_TYPE = None,
        value: rt_schemas.VALUE_TYPE = None,
        comment: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> dict:
        """Attach a scored or valued judgment to a run."""
        body: Dict[str, Any] = {"run_id": str(run_id), "key": key}
        if score is not None:
            body["score"] = score
        if value is not None:
            body["value"] = value
        if comment is not None:
            body["comment"] = comment
        response = self.request_with_retries(
            "POST", "/api/v1/feedback", tenant_id=tenant_id, body=body
        )
        return self._json(response) or {}
