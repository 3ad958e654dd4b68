"""
Paginated, rate-limited REST client.

The client wraps one downstream HTTP API. Reads and writes never raise for
API or transport failures: the failure is logged and a no-result value is
returned so that the caller can skip the affected entity and carry on.
Throttled calls are retried once through the configured RateLimitRetry.
"""

import json
import ssl
import logging
from http.client import HTTPSConnection, HTTPConnection, HTTPException
from typing import Dict, List, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlsplit, urlencode

from idm_sync.pagination import LinkHeaderPagination
from idm_sync.retry import RateLimitRetry, RetryableError, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised for HTTP error responses."""

    def __init__(self, status: int, reason: str, body: str = ''):
        self.status = status
        self.reason = reason
        self.body = body
        super().__init__(f"HTTP {status}: {reason}")


class RateLimitError(ApiError, RetryableError):
    """Raised for HTTP 429 Too Many Requests."""
    pass


class RestClient:
    """
    JSON REST client over http.client.

    Pagination and rate-limit handling are injected: ``pagination`` decides
    how list endpoints are exhausted and ``retry_policy`` how throttled calls
    are retried.
    """

    # Failures turned into no-result values
    FAILURES = (ApiError, MaxRetriesExceeded, OSError, HTTPException, ValueError)

    def __init__(self, name: str, server_url: str, api_path: str = '',
                 headers: Optional[Dict[str, str]] = None,
                 page_size: int = 100,
                 pagination=None,
                 retry_policy: Optional[RateLimitRetry] = None,
                 proxy_host: Optional[str] = None,
                 proxy_port: int = 0,
                 verify_ssl: bool = True,
                 ca_cert_file: Optional[str] = None,
                 timeout: float = 30):
        """
        Initialize the client.

        Args:
            name: Name used in log messages
            server_url: Base URL of the server, may contain a path prefix
            api_path: Path of the API below the server URL, e.g. '/api/v4'
            headers: Headers sent with every request (authentication)
            page_size: Number of items requested per page
            pagination: Pagination strategy, defaults to LinkHeaderPagination
            retry_policy: Rate-limit retry policy, defaults to a one second wait
            proxy_host: Optional proxy host
            proxy_port: Proxy port
            verify_ssl: Verify the server certificate
            ca_cert_file: Optional CA bundle for certificate verification
            timeout: Socket timeout in seconds
        """
        self.name = name
        self.server_url = server_url
        self.parsed_url = urlparse(server_url)
        self.scheme = self.parsed_url.scheme or 'https'
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        if api_path:
            self.base_path += '/' + api_path.strip('/')

        self.headers = dict(headers or {})
        self.page_size = max(1, int(page_size))
        self.pagination = pagination or LinkHeaderPagination()
        self.retry_policy = retry_policy or RateLimitRetry(1)
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.verify_ssl = verify_ssl
        self.ca_cert_file = ca_cert_file
        self.timeout = timeout

        self.connection = None
        self.ssl_context = self._create_ssl_context()

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Set up SSL context based on configuration."""
        if self.scheme != 'https':
            return None

        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.name}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        if self.ca_cert_file:
            context.load_verify_locations(cafile=self.ca_cert_file)
            logger.info(f"Loaded CA certificates for {self.name}: {self.ca_cert_file}")
        return context

    def set_header(self, name: str, value: str):
        self.headers[name] = value

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.proxy_host:
            proxy_port = self.proxy_port or None
            if self.scheme == 'https':
                self.connection = HTTPSConnection(
                    self.proxy_host, proxy_port, context=self.ssl_context, timeout=self.timeout)
                self.connection.set_tunnel(self.host)
            else:
                self.connection = HTTPConnection(self.proxy_host, proxy_port, timeout=self.timeout)
            logger.debug(f"Connecting to {self.name} via proxy {self.proxy_host}:{self.proxy_port}")
        elif self.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def build_target(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Build the request target for an API path.

        None-valued parameters are dropped; booleans are sent as 'true'/'false'.
        """
        target = self.base_path + '/' + path.lstrip('/')
        if params:
            query = []
            for key, value in params.items():
                if value is None:
                    continue
                if isinstance(value, bool):
                    value = 'true' if value else 'false'
                query.append((key, value))
            if query:
                target += '?' + urlencode(query)
        return target

    def _target_from_url(self, url: str) -> str:
        parts = urlsplit(url)
        target = parts.path or '/'
        if parts.query:
            target += '?' + parts.query
        return target

    def _execute(self, method: str, target: str, body: Any = None,
                 headers: Optional[Dict[str, str]] = None) -> Tuple[Any, Any]:
        """
        Send one request.

        Returns:
            Tuple of (decoded JSON body or None, response headers)

        Raises:
            RateLimitError: On HTTP 429
            ApiError: On any other HTTP error status
        """
        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.headers)

        request_body = None
        if body is not None:
            if isinstance(body, str):
                request_body = body
            else:
                request_body = json.dumps(body)
                request_headers['Content-Type'] = 'application/json'
        if headers:
            request_headers.update(headers)

        request_target = target
        if self.proxy_host and self.scheme == 'http':
            request_target = f"{self.scheme}://{self.host}{target}"

        conn = self._get_connection()
        logger.debug(f"Making {method} request to {self.host}{target}")
        try:
            conn.request(method, request_target, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException):
            self.close()
            raise

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 429:
            raise RateLimitError(response.status, response.reason, response_data)
        if response.status >= 400:
            raise ApiError(response.status, response.reason, response_data)

        data = json.loads(response_data) if response_data.strip() else None
        return data, response.headers

    def _call(self, method: str, target: str, body: Any = None,
              headers: Optional[Dict[str, str]] = None) -> Tuple[Any, Any]:
        return self.retry_policy.call(
            self._execute, method, target, body, headers,
            description=f"{self.name} {method} {target}")

    def _log_failure(self, method: str, target: str, error: Exception):
        if isinstance(error, MaxRetriesExceeded):
            logger.error(f"API call {method} '{target}' still rate limited after "
                         f"{error.attempts} attempts")
            error = error.last_exception
        body = getattr(error, 'body', '')
        logger.error(f"API call {method} '{target}' failed with {error}: {body}")

    def _fetch_page(self, path: Optional[str], params: Optional[Dict[str, Any]],
                    url: Optional[str] = None) -> Tuple[Any, Any]:
        target = self._target_from_url(url) if url else self.build_target(path, params)
        return self._call('GET', target)

    def read(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """
        GET a single resource.

        Returns:
            Decoded JSON or None on failure
        """
        target = self.build_target(path, params)
        try:
            data, _ = self._call('GET', target)
            return data
        except self.FAILURES as e:
            self._log_failure('GET', target, e)
            return None

    def read_list(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[List[Any]]:
        """
        GET every page of a list endpoint.

        Returns:
            All items in server order, or None if any page failed
        """
        try:
            return self.pagination.collect(self._fetch_page, path, dict(params or {}), self.page_size)
        except self.FAILURES as e:
            self._log_failure('GET', self.build_target(path, params), e)
            return None

    def write(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
              body: Any = None) -> bool:
        """
        Send a state-changing request.

        Returns:
            True if the server accepted the request
        """
        return self.write_for_object(method, path, params, body) is not None

    def write_for_object(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                         body: Any = None) -> Optional[Any]:
        """
        Send a state-changing request and return the decoded response.

        Returns:
            Decoded JSON, an empty dict for empty responses, or None on failure
        """
        target = self.build_target(path, params)
        try:
            data, _ = self._call(method, target, body)
            return data if data is not None else {}
        except self.FAILURES as e:
            self._log_failure(method, target, e)
            return None

    def post_form(self, path: str, form: Dict[str, Any],
                  headers: Optional[Dict[str, str]] = None) -> Optional[Any]:
        """POST an urlencoded form, e.g. to an OAuth2 token endpoint."""
        target = self.build_target(path)
        form_headers = {'Content-Type': 'application/x-www-form-urlencoded'}
        if headers:
            form_headers.update(headers)
        try:
            data, _ = self._call('POST', target, urlencode(form), form_headers)
            return data
        except self.FAILURES as e:
            self._log_failure('POST', target, e)
            return None

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except (OSError, HTTPException) as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
