"""
Sinalite REST API client.

Handles the client-credentials token exchange and authenticated GET requests.
One client instance is shared by all workers: the bearer token and the
request throttle are common, while each thread gets its own requests.Session.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Settings
from .errors import ApiResponseError, AuthError, FetchFailure, TransientNetworkError
from .retry import RequestThrottle, RetryPolicy, Sleeper, request_with_retry


logger = logging.getLogger(__name__)

USER_AGENT = "sinalite-catalog-ingest/1.0"
ERROR_BODY_LIMIT = 250


class SinaliteClient:
    """
    Client for the Sinalite vendor API.

    Usage:
        client = SinaliteClient(settings)
        client.authenticate()
        detail = client.fetch_detail(1234, "en_us")
    """

    def __init__(
        self,
        settings: Settings,
        throttle: Optional[RequestThrottle] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleeper = time.sleep,
        should_stop: Optional[Callable[[], bool]] = None,
    ):
        self.settings = settings
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.throttle = throttle or RequestThrottle(settings.request_delay, sleep=sleep)
        self.token: Optional[str] = None
        self._sleep = sleep
        self._should_stop = should_stop
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """The calling thread's session (requests.Session is not thread-safe)."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({
                'Accept': 'application/json',
                'User-Agent': USER_AGENT,
            })
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        """Close the session of every thread that made a request."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()

    def url_for(self, path: str) -> str:
        return f"{self.settings.api_base}/{path.lstrip('/')}"

    def _send(self, method: str, url: str, label: str, **kwargs) -> requests.Response:
        """One logical request through the shared retry policy and throttle."""
        return request_with_retry(
            lambda: self.session.request(method, url, timeout=self.settings.request_timeout, **kwargs),
            self.policy,
            label=label,
            sleep=self._sleep,
            throttle=self.throttle,
            should_stop=self._should_stop,
        )

    def authenticate(self) -> str:
        """
        Exchange client credentials for a bearer token.

        Returns:
            The Authorization header value ("Bearer <token>"), also stored on
            the client for subsequent calls.

        Raises:
            AuthError: credentials missing, request failed, non-OK status,
                non-JSON body, or no access_token in the response
        """
        settings = self.settings
        if not settings.client_id or not settings.client_secret:
            raise AuthError("Missing SINALITE_CLIENT_ID or SINALITE_CLIENT_SECRET")

        payload = {
            'client_id': settings.client_id,
            'client_secret': settings.client_secret,
            'audience': settings.audience,
            'grant_type': 'client_credentials',
        }

        try:
            response = self._send("POST", settings.auth_url, "POST auth/token", json=payload)
        except TransientNetworkError as e:
            raise AuthError(f"Auth request failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise AuthError(f"Auth request error: {e}") from e

        if not response.ok:
            raise AuthError(
                f"Auth failed ({response.status_code}): {response.text[:ERROR_BODY_LIMIT]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError(f"Auth response was not JSON: {response.text[:ERROR_BODY_LIMIT]}") from e

        access_token = data.get('access_token') if isinstance(data, dict) else None
        if not access_token:
            raise AuthError("Auth response missing access_token")

        self.token = f"Bearer {access_token}"
        logger.info("Obtained access token")
        return self.token

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Authenticated GET returning the decoded JSON body.

        Returns:
            Decoded JSON, or None for a 404 or an empty body.

        Raises:
            TransientNetworkError: retries exhausted
            ApiResponseError: terminal non-OK status, or a body that is not JSON
        """
        headers = {'Authorization': self.token} if self.token else {}
        response = self._send("GET", self.url_for(path), f"GET {path}", params=params, headers=headers)

        if response.status_code == 404:
            return None

        body = response.text
        if not response.ok:
            raise ApiResponseError(
                f"GET {path} failed ({response.status_code}): {body[:ERROR_BODY_LIMIT]}",
                status=response.status_code,
                path=path,
            )

        if not body.strip():
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ApiResponseError(
                f"GET {path} returned invalid JSON: {body[:ERROR_BODY_LIMIT]}",
                status=response.status_code,
                path=path,
            ) from e

    def fetch_detail(self, product_id: int, store_code: str) -> Any:
        """
        Fetch the detail payload for one (product, store) pair.

        Returns:
            The decoded payload, or None when the vendor has no data (404 or
            empty body).

        Raises:
            FetchFailure: retries exhausted, terminal HTTP error, or invalid JSON
        """
        path = f"product/{product_id}/{store_code}"
        try:
            return self.get_json(path)
        except (TransientNetworkError, ApiResponseError) as e:
            raise FetchFailure(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise FetchFailure(f"GET {path} failed: {e}") from e
