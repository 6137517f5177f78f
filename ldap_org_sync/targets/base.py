"""
Base HTTP client for target directory APIs.

Provides connection handling over ``http.client``, SSL context setup with an
optional custom CA bundle, bearer token authentication, JSON request and
response handling, Link header pagination, and the mapping of HTTP failures
onto the ``TargetAPIError`` hierarchy. Rate limits, and transient failures of
idempotent requests, are retried with ``retry.retry_call``.
"""

import json
import ssl
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple, Union
from urllib.parse import urlencode, urlparse
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from ldap_org_sync.retry import (
    MaxRetriesExceeded,
    RetryableError,
    create_retry_callback,
    is_retryable_error,
    retry_call,
    retry_settings,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Methods safe to repeat after a transient failure
IDEMPOTENT_METHODS = ('GET', 'HEAD', 'PUT', 'DELETE')


class TargetAPIError(Exception):
    """Base exception for target API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TargetAuthenticationError(TargetAPIError):
    """Raised when the target API rejects the credentials."""
    pass


class AlreadyMemberError(TargetAPIError):
    """Raised when an invitation is refused because the address already belongs to a member."""

    def __init__(self, email: str, status_code: Optional[int] = 422,
                 response_body: Optional[str] = None):
        super().__init__(f"User {email} is already a member of the organization",
                         status_code, response_body)
        self.email = email


class RateLimitError(TargetAPIError, RetryableError):
    """Raised on 429 responses or 403 responses with an exhausted quota."""

    def __init__(self, message: str, status_code: Optional[int] = 429,
                 response_body: Optional[str] = None, retry_after: Optional[float] = None):
        Exception.__init__(self, message)
        self.status_code = status_code
        self.response_body = response_body
        self.retry_after = retry_after


@dataclass
class TargetResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    data: Any = None


def parse_link_next(link_header: Optional[str]) -> Optional[str]:
    """Extract the ``rel="next"`` URL from a Link header."""
    if not link_header:
        return None
    for part in link_header.split(','):
        part = part.strip()
        if 'rel="next"' in part:
            start = part.find('<')
            end = part.find('>')
            if start >= 0 and end > start:
                return part[start + 1:end]
    return None


def _error_message(data: Any, raw: str) -> str:
    """Pull the human readable message (and nested error messages) out of an error body."""
    if isinstance(data, dict):
        messages = [str(data.get('message', ''))]
        for error in data.get('errors') or []:
            if isinstance(error, dict) and error.get('message'):
                messages.append(str(error['message']))
            elif isinstance(error, str):
                messages.append(error)
        return '; '.join(m for m in messages if m)
    return raw[:200]


class TargetAPIBase(ABC):
    """
    Abstract base class for target directory API clients.

    Subclasses implement ``test_connection`` and the directory operations on
    top of ``request``, ``call`` and ``paginate``.
    """

    default_headers: Dict[str, str] = {'Accept': 'application/json'}

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize the client.

        Args:
            config: Target section of the configuration (base_url, token,
                verify_ssl, ca_cert_file, timeout)
            error_handling: Retry settings (max_retries, retry_wait_seconds)
        """
        self.config = config
        self.name = config.get('name', 'target')
        self.base_url = config['base_url']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', DEFAULT_TIMEOUT)
        self.retry_options = retry_settings(error_handling or {})

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates for {self.name}: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                logger.error(f"Failed to load CA certificates {ca_cert_file}: {e}")
                raise TargetAPIError(f"CA certificate loading failed: {e}")

    def _setup_authentication(self):
        token = self.config.get('token')
        if token:
            self.auth_headers['Authorization'] = f"Bearer {token}"
            logger.debug(f"Configured Bearer token authentication for {self.name}")
        else:
            logger.warning(f"No token configured for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            # Absolute URLs come from Link headers and already carry their query
            parsed = urlparse(path)
            full_path = parsed.path
            if parsed.query:
                full_path += '?' + parsed.query
            return full_path

        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            separator = '&' if '?' in full_path else '?'
            full_path += separator + urlencode(params)
        return full_path

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None) -> TargetResponse:
        """
        Make a single HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: Path relative to base_url, or an absolute URL on the same host
            body: JSON request body
            params: Query string parameters
            headers: Additional headers

        Returns:
            TargetResponse with status, lowercased headers and parsed JSON

        Raises:
            TargetAuthenticationError: On 401
            RateLimitError: On 429 or a 403 with an exhausted quota
            TargetAPIError: On any other failure
        """
        full_path = self._build_path(path, params)

        request_headers = dict(self.default_headers)
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            raw = response.read().decode('utf-8', errors='replace')
            response_headers = {k.lower(): v for k, v in response.getheaders()}
        except (HTTPException, ConnectionError, OSError) as e:
            self.close_connection()
            raise TargetAPIError(f"Connection error to {self.name}: {e}") from e

        logger.debug(f"Response status: {response.status} {response.reason}")

        try:
            data = json.loads(raw) if raw else None
        except json.JSONDecodeError as e:
            if response.status < 400:
                raise TargetAPIError(f"Invalid JSON response from {self.name}: {e}",
                                     response.status, raw)
            data = None

        if response.status >= 400:
            self._raise_for_status(response.status, response.reason, response_headers, data, raw)

        return TargetResponse(status=response.status, headers=response_headers, data=data)

    def _raise_for_status(self, status: int, reason: str, headers: Dict[str, str],
                          data: Any, raw: str):
        message = _error_message(data, raw) or reason

        if status == 429 or (status == 403 and headers.get('x-ratelimit-remaining') == '0'):
            raise RateLimitError(f"Rate limited by {self.name}: {message}", status, raw,
                                 retry_after=self._retry_after(headers))
        if status == 403 and 'secondary rate limit' in message.lower():
            raise RateLimitError(f"Secondary rate limit hit on {self.name}: {message}", status, raw,
                                 retry_after=self._retry_after(headers))
        if status == 401:
            raise TargetAuthenticationError(f"Authentication failed for {self.name}: {message}",
                                            status, raw)
        raise TargetAPIError(f"HTTP {status}: {message}", status, raw)

    @staticmethod
    def _retry_after(headers: Dict[str, str]) -> Optional[float]:
        retry_after = headers.get('retry-after')
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        reset = headers.get('x-ratelimit-reset')
        if reset:
            try:
                return max(0.0, float(reset) - time.time())
            except ValueError:
                pass
        return None

    def call(self, method: str, path: str, body: Optional[Dict] = None,
             params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None) -> TargetResponse:
        """
        ``request`` with retries.

        Rate limit responses are retried for every method. Idempotent methods
        are also retried on connection failures and 5xx responses.
        """
        if method.upper() in IDEMPOTENT_METHODS:
            exceptions, retry_if = (TargetAPIError,), is_retryable_error
        else:
            exceptions, retry_if = (RateLimitError,), None

        try:
            return retry_call(
                self.request,
                args=(method, path),
                kwargs={'body': body, 'params': params, 'headers': headers},
                exceptions=exceptions,
                retry_if=retry_if,
                on_retry=create_retry_callback(f"{method} {path}"),
                **self.retry_options
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None,
                 items_key: Optional[str] = None) -> Iterator[Any]:
        """
        Yield items across every page, following Link ``rel="next"`` URLs.

        Args:
            path: First page path
            params: Query parameters for the first page
            items_key: Key holding the item list when pages are objects
        """
        next_path = path
        next_params = params
        while next_path:
            response = self.call('GET', next_path, params=next_params)
            page = response.data or []
            if items_key and isinstance(page, dict):
                page = page.get(items_key) or []
            for item in page:
                yield item
            next_path = parse_link_next(response.headers.get('link'))
            next_params = None

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def test_connection(self) -> Tuple[bool, str]:
        """
        Check that the API is reachable and the credentials are accepted.

        Returns:
            (success, detail message)
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
