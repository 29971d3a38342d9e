"""
Base publisher interface and common functionality.

This module defines the abstract base class that publisher integrations must implement,
along with common HTTP client functionality and SSL/authentication handling.
"""

import json
import ssl
import time
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class PublisherError(Exception):
    """Base exception for publisher errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 remote_message: Optional[str] = None):
        self.status_code = status_code
        self.remote_message = remote_message
        super().__init__(message)


class PublisherAuthenticationError(PublisherError):
    """Raised when authentication to the publisher API fails."""
    pass


class UploadFailure(PublisherError):
    """Raised when the output document could not be stored."""
    pass


class ImportSubmissionFailure(PublisherError):
    """Raised when the remote service rejects the import request."""
    pass


class PublisherBase(ABC):
    """
    Abstract base class for publisher integrations.

    A publisher stores the output document at a retrievable URL and queues the
    profile import job that reads it. Provides common HTTP client functionality
    and authentication handling.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize publisher client.

        Args:
            config: Publisher configuration dictionary
        """
        self.config = config
        self.name = config.get('name', type(self).__name__)
        self.base_url = config['base_url'].rstrip('/')
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)

        # HTTP connections keyed by (scheme, host)
        self.connections = {}
        self.ssl_context = None

        # Authentication state
        self.auth_headers = {}
        self._token_expires_at = None

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise PublisherError(f"Failed to load CA certificates {ca_cert_file}: {e}")

        # Client certificate for mutual TLS
        cert_file = self.config.get('cert_file')
        if cert_file:
            try:
                self.ssl_context.load_cert_chain(cert_file, self.config.get('key_file'),
                                                 password=self.config.get('key_password'))
                logger.info(f"Loaded client certificate: {cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise PublisherError(f"Failed to load client certificate {cert_file}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            required = ('client_id', 'client_secret', 'token_url')
            if not all(self.auth_config.get(field) for field in required):
                logger.error(f"OAuth2 auth configured but missing required fields "
                             f"(client_id, client_secret, token_url) for {self.name}")
            else:
                logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method in ('mtls', 'mutual_tls'):
            logger.debug(f"Mutual TLS authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve OAuth2 access token using client credentials flow.

        Returns:
            True if token was successfully obtained
        """
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        token_url = self.auth_config.get('token_url')
        scope = self.auth_config.get('scope', '')

        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.name}")
            return False

        parsed_token_url = urlparse(token_url)
        token_conn = self._new_connection(parsed_token_url.scheme, parsed_token_url.netloc)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if scope:
            token_data['scope'] = scope

        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}")
                return False

            token_response = json.loads(response_data)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                # Refresh a minute early
                self._token_expires_at = time.time() + int(expires_in) - 60

            logger.info(f"Successfully obtained OAuth2 token for {self.name}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")
            return False
        except (OSError, ValueError) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        """Check if OAuth2 token is still valid."""
        if self._token_expires_at is None:
            return 'Authorization' in self.auth_headers
        return time.time() < self._token_expires_at

    def _new_connection(self, scheme: str, host: str) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(host, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(host, timeout=self.timeout)

    def _get_connection(self, scheme: str, host: str) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection for a host."""
        key = (scheme, host)
        if key not in self.connections:
            self.connections[key] = self._new_connection(scheme, host)
        return self.connections[key]

    def request(self, method: str, url: str, body: Optional[Dict] = None,
                raw_body: Optional[bytes] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the publisher API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            url: Absolute URL, or a path relative to base_url
            body: JSON request body
            raw_body: Raw bytes request body (takes precedence over body)
            headers: Additional headers

        Returns:
            Parsed JSON response data (empty dict for empty responses)

        Raises:
            PublisherAuthenticationError: If the service keeps answering 401
            PublisherError: If the request fails
        """
        if url.startswith('http://') or url.startswith('https://'):
            target = urlparse(url)
        else:
            target = urlparse(self.base_url + '/' + url.lstrip('/'))
        path = target.path + (f"?{target.query}" if target.query else '')

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if raw_body is not None:
            request_body = raw_body
            request_headers.setdefault('Content-Type', 'application/octet-stream')
        elif body is not None:
            request_body = json.dumps(body)
            request_headers.setdefault('Content-Type', 'application/json')

        # One token refresh on 401 for OAuth2
        max_auth_retries = 1 if self.auth_config.get('method', '').lower() == 'oauth2' else 0
        for auth_attempt in range(max_auth_retries + 1):
            try:
                conn = self._get_connection(target.scheme, target.netloc)
                logger.debug(f"Making {method} request to {target.netloc}{target.path}")
                conn.request(method, path, request_body, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
                logger.debug(f"Response status: {response.status} {response.reason}")
            except OSError as e:
                self._drop_connection(target.scheme, target.netloc)
                raise PublisherError(f"Connection error to {self.name}: {e}")

            if response.status == 401:
                if auth_attempt < max_auth_retries:
                    logger.info(f"401 error received, attempting to refresh OAuth2 token for {self.name}")
                    if self._oauth2_get_token():
                        request_headers.update(self.auth_headers)
                        continue
                raise PublisherAuthenticationError(f"Authentication failed for {self.name}", status_code=401,
                                                   remote_message=extract_error_message(response_data))

            if response.status >= 400:
                remote_message = extract_error_message(response_data)
                message = f"HTTP {response.status}: {response.reason}"
                if remote_message:
                    message += f" - {remote_message}"
                raise PublisherError(message, status_code=response.status, remote_message=remote_message)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise PublisherError(f"Invalid JSON response from {self.name}: {e}",
                                     status_code=response.status)

        raise PublisherAuthenticationError(f"Authentication failed for {self.name}", status_code=401)

    def _drop_connection(self, scheme: str, host: str):
        conn = self.connections.pop((scheme, host), None)
        if conn:
            conn.close()

    def close_connection(self):
        """Close all HTTP connections."""
        for key in list(self.connections):
            try:
                self.connections[key].close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
        self.connections = {}

    def authenticate(self) -> bool:
        """
        Perform any additional authentication steps (e.g., OAuth2 token retrieval).

        Returns:
            True if authentication successful
        """
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'oauth2':
            if not self._is_oauth2_token_valid():
                return self._oauth2_get_token()
            logger.debug(f"OAuth2 token still valid for {self.name}")
            return True

        if auth_method in ('basic', 'token', 'bearer'):
            return 'Authorization' in self.auth_headers

        if auth_method in ('mtls', 'mutual_tls', ''):
            return True

        logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")
        return False

    @abstractmethod
    def upload(self, content: bytes, destination_library: str, file_name: str) -> str:
        """
        Store the output document.

        Args:
            content: Serialized document bytes
            destination_library: Library or folder receiving the file
            file_name: Name of the stored file

        Returns:
            Absolute URL the import job can read the document from

        Raises:
            UploadFailure: If the document could not be stored
        """
        pass

    @abstractmethod
    def submit_import(self, identity_type: str, identity_field: str,
                      property_map: Dict[str, str], source_url: str) -> str:
        """
        Queue the bulk profile property import.

        Args:
            identity_type: One of 'Email', 'CloudId', 'PrincipalName'
            identity_field: Row field holding the identity (``idName``)
            property_map: Source attribute -> profile property mapping
            source_url: URL returned by upload()

        Returns:
            Import job identifier

        Raises:
            ImportSubmissionFailure: If the request is rejected
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()


def extract_error_message(response_data: str) -> Optional[str]:
    """
    Pull a human readable message out of an error response body.

    Understands OData verbose (``odata.error``/``error`` with ``message.value``)
    and OAuth style (``error_description``) payloads; falls back to the raw text.
    """
    if not response_data:
        return None
    try:
        payload = json.loads(response_data)
    except json.JSONDecodeError:
        return response_data.strip()[:500] or None

    if not isinstance(payload, dict):
        return str(payload)

    error = payload.get('odata.error') or payload.get('error')
    if isinstance(error, dict):
        message = error.get('message')
        if isinstance(message, dict):
            message = message.get('value')
        if message:
            return str(message)
        if error.get('code'):
            return str(error['code'])
    if payload.get('error_description'):
        return str(payload['error_description'])
    if isinstance(error, str):
        return error
    return response_data.strip()[:500]
