"""Flume API client module.

This module handles:
- Password-grant authentication against the Flume OAuth token endpoint
- Querying per-minute usage for a device over a time window
- Listing the devices registered to the account
- Retrying transient failures through RetryExecutor
"""

import base64
import json
import logging
from typing import FrozenSet, List, Optional

import requests

from flume_exporter.credentials import CredentialError, Credentials
from flume_exporter.readings import RawReading, ReadingParseError, parse_graph
from flume_exporter.retry import (
    AUTH_RETRYABLE,
    QUERY_RETRYABLE,
    ErrorKind,
    RetryExecutor,
    classify_error,
)
from flume_exporter.window import QueryWindow

# Configure module logger
logger = logging.getLogger(__name__)


class FlumeError(Exception):
    """Base exception for Flume client errors."""
    pass


class FlumeAPIError(FlumeError):
    """Exception raised when the API answers with an error status.

    Attributes:
        status_code: HTTP status returned by the API
        body: Response body text, for diagnosis
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class FlumeAuthError(FlumeAPIError):
    """Exception raised when the token request is refused."""
    pass


class RequestRejected(FlumeAPIError):
    """Exception raised when a query is refused with a 4xx status."""
    pass


class RetryExhausted(FlumeError):
    """Exception raised when a transient failure outlasts the retry budget.

    Attributes:
        kind: Error kind of the last failure
    """

    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind


def _response_details(error: requests.HTTPError) -> tuple:
    response = error.response
    if response is None:
        return None, ""
    return response.status_code, response.text


def jwt_claim(token: str, claim: str) -> Optional[str]:
    """Read a claim from a JWT payload without verifying the signature.

    Args:
        token: Encoded JWT
        claim: Claim name

    Returns:
        Claim value as a string, or None if absent or not a JWT
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return None

    if not isinstance(data, dict) or data.get(claim) is None:
        return None
    return str(data[claim])


class FlumeClient:
    """Client for the Flume personal API.

    Every run re-authenticates with the password grant rather than reusing
    a stored token, so a revoked or expired token never blocks ingestion.

    Attributes:
        base_url: API base URL
        timeout: Per-request timeout in seconds
        executor: RetryExecutor wrapping every request
    """

    BASE_URL = "https://api.flumetech.com"
    TOKEN_PATH = "/oauth/token"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30,
        executor: Optional[RetryExecutor] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL (default: https://api.flumetech.com)
            timeout: Per-request timeout in seconds
            executor: Retry executor (default: 5 retries)
            session: Optional HTTP session for testing
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.executor = executor or RetryExecutor()
        self.session = session or requests.Session()

    def _retry_request(
        self,
        method: str,
        url: str,
        retryable: FrozenSet[ErrorKind],
        **kwargs,
    ) -> requests.Response:
        """Execute request with retry logic.

        Args:
            method: HTTP method (GET, POST)
            url: Request URL
            retryable: Error kinds that may be retried
            **kwargs: Additional arguments passed to requests

        Returns:
            Response object with a successful status

        Raises:
            RetryExhausted: If a retryable failure outlasts the retry budget
            requests.RequestException: For any non-retryable failure
        """
        kwargs.setdefault("timeout", self.timeout)

        def attempt(attempt_number: int) -> requests.Response:
            logger.debug(f"{method} {url} (attempt {attempt_number + 1})")
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
            return response

        try:
            return self.executor.execute(attempt, retryable)
        except requests.RequestException as e:
            kind = classify_error(e)
            if kind in retryable:
                raise RetryExhausted(
                    f"{method} {url} failed after {self.executor.max_retries} retries: {e}",
                    kind=kind,
                ) from e
            raise

    def _auth_headers(self, credentials: Credentials) -> dict:
        if not credentials.access_token:
            raise FlumeAuthError("Not authenticated - call authenticate() first")
        return {"Authorization": f"Bearer {credentials.access_token}"}

    def authenticate(self, credentials: Credentials) -> Credentials:
        """Obtain a fresh access token with the password grant.

        Updates access_token and refresh_token on the record in place, and
        fills user_id from the token if the record has none. The caller is
        responsible for persisting the record.

        Args:
            credentials: Credential record to authenticate and update

        Returns:
            The same, updated, credential record

        Raises:
            FlumeAuthError: If the token endpoint refuses the request or
                answers with an unexpected body
            RetryExhausted: If the token endpoint stays unreachable
        """
        logger.info(f"Authenticating as {credentials.username}")

        form_data = {
            "grant_type": "password",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "username": credentials.username,
            "password": credentials.password,
        }

        try:
            response = self._retry_request(
                "POST",
                f"{self.base_url}{self.TOKEN_PATH}",
                AUTH_RETRYABLE,
                data=form_data,
            )
        except requests.HTTPError as e:
            status_code, body = _response_details(e)
            logger.error(f"Token request refused ({status_code}): {body}")
            raise FlumeAuthError(f"Authentication failed: {e}", status_code, body) from e

        try:
            token = response.json()["data"][0]
            access_token = token["access_token"]
            refresh_token = token.get("refresh_token", "")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise FlumeAuthError(
                f"Unexpected token response: {e}", response.status_code, response.text
            ) from e

        if not access_token:
            raise FlumeAuthError("Token response contained an empty access token")

        credentials.access_token = access_token
        credentials.refresh_token = refresh_token or ""

        if not credentials.user_id:
            user_id = jwt_claim(access_token, "user_id")
            if user_id:
                logger.info(f"Discovered user ID {user_id} from access token")
                credentials.user_id = user_id

        logger.info("Authentication successful")
        return credentials

    def _query_request(self, method: str, url: str, credentials: Credentials, **kwargs) -> requests.Response:
        try:
            return self._retry_request(
                method, url, QUERY_RETRYABLE, headers=self._auth_headers(credentials), **kwargs
            )
        except requests.HTTPError as e:
            status_code, body = _response_details(e)
            if status_code is not None and 400 <= status_code < 500:
                raise RequestRejected(f"Request rejected: {e}", status_code, body) from e
            raise FlumeAPIError(f"Request failed: {e}", status_code, body) from e

    def fetch_readings(self, credentials: Credentials, window: QueryWindow) -> List[RawReading]:
        """Fetch per-minute usage readings for the configured device.

        Args:
            credentials: Authenticated credential record
            window: Time range to query

        Returns:
            List of RawReading for the window

        Raises:
            CredentialError: If user_id or device_id is not set
            RequestRejected: If the API refuses the query (4xx)
            RetryExhausted: If the API stays unavailable
            ReadingParseError: If the response body is malformed
        """
        if not credentials.user_id or not credentials.device_id:
            raise CredentialError("user_id and device_id must be set to query usage")

        query = {
            "raw": False,
            "request_id": "graph",
            "group_multiplier": 1,
            "bucket": "MIN",
            "since_datetime": window.since_datetime,
            "until_datetime": window.until_datetime,
        }

        logger.info(
            f"Querying device {credentials.device_id} from "
            f"{window.since_datetime} to {window.until_datetime}"
        )

        response = self._query_request(
            "POST",
            f"{self.base_url}/users/{credentials.user_id}/devices/{credentials.device_id}/query",
            credentials,
            json={"queries": [query]},
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise ReadingParseError(f"Query response is not JSON: {e}") from e

        readings = parse_graph(payload)
        logger.info(f"Fetched {len(readings)} readings")
        return readings

    def list_devices(self, credentials: Credentials) -> List[dict]:
        """List the devices registered to the account.

        Args:
            credentials: Authenticated credential record

        Returns:
            Device descriptions as returned by the API

        Raises:
            CredentialError: If user_id is not set
            RequestRejected: If the API refuses the request (4xx)
            RetryExhausted: If the API stays unavailable
        """
        if not credentials.user_id:
            raise CredentialError("user_id must be set to list devices")

        response = self._query_request(
            "GET",
            f"{self.base_url}/users/{credentials.user_id}/devices",
            credentials,
            params={"user": "false", "location": "false"},
        )

        try:
            devices = response.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise FlumeAPIError(f"Unexpected devices response: {e}", response.status_code, response.text) from e

        logger.info(f"Found {len(devices)} devices")
        return devices
