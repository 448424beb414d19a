"""
GitHub REST transport shared by the credential, registration and artifact
components.
"""

import functools
import http.client
import json
import platform
import random
import time
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from runner_config import AuthError, Config, RunnerError, UpstreamError, __version__, logger

NETWORK_ERRORS = (URLError, HTTPError, TimeoutError, ConnectionError, http.client.HTTPException)


class GitHubApiError(UpstreamError):
    """API call failed with an HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RetryPolicy:
    """
    Class-based decorator for network resilience.
    It inspects the instance ('self') to find configuration.
    """

    def __init__(self, exceptions=NETWORK_ERRORS, retries_attr='download_retries', backoff_attr='download_backoff'):
        self.exceptions = exceptions
        self.retries_attr = retries_attr
        self.backoff_attr = backoff_attr

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(obj, *args, **kwargs):
            config = getattr(obj, 'config', None)

            if config is not None and hasattr(config, self.retries_attr):
                max_retries = getattr(config, self.retries_attr)
                backoff_factor = getattr(config, self.backoff_attr)
            else:
                max_retries = 3
                backoff_factor = 1.5

            delay = 1.0
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(obj, *args, **kwargs)
                except self.exceptions as e:
                    last_exception = e

                    # Fail fast on 4xx client errors
                    if isinstance(e, HTTPError) and 400 <= e.code < 500:
                        raise e

                    if attempt < max_retries:
                        sleep_time = delay * (1 + random.random() * 0.1)
                        logger.warning(f"Network error: {e}. Retrying in {sleep_time:.2f}s (Attempt {attempt + 1}/{max_retries})...")

                        time.sleep(sleep_time)
                        delay *= backoff_factor

            if last_exception:
                logger.error(f"Operation failed after {max_retries} retries: {last_exception}")
                raise last_exception

            raise RunnerError("Operation failed with unknown error.")

        return wrapper


class GitHubClient:
    """
    Handles HTTP interaction with the GitHub REST API.
    API calls are not retried; release metadata lookups may be.
    """

    def __init__(self, config: Config):
        self.config = config

    @property
    def user_agent(self) -> str:
        return f"RunnerController/{__version__} (Python {platform.python_version()}; {platform.system()})"

    def endpoint(self, path: str) -> str:
        return f"{self.config.api_url}/{path.lstrip('/')}"

    def repo_endpoint(self, repository: str, path_suffix: str) -> str:
        owner, repo = repository.split('/', 1)
        return self.endpoint(f"repos/{owner}/{repo}/{path_suffix}")

    def build_request(self, url: str, method: str = "GET", auth_token: Optional[str] = None,
                      accept: str = "application/vnd.github+json") -> Request:
        req = Request(url, method=method)
        if auth_token:
            req.add_header("Authorization", f"Bearer {auth_token}")
        req.add_header("Accept", accept)
        req.add_header("X-GitHub-Api-Version", "2022-11-28")
        req.add_header("User-Agent", self.user_agent)
        return req

    def _send_request(self, req: Request) -> bytes:
        with urlopen(req, timeout=self.config.api_timeout) as resp:
            return resp.read()

    @RetryPolicy()
    def _send_request_with_retry(self, req: Request) -> bytes:
        return self._send_request(req)

    def execute_api_call(self, url: str, method: str = "GET", params: str = "",
                         auth_token: Optional[str] = None, retry: bool = False) -> Any:
        """
        Unified handler for API requests.
        Constructs URL -> Adds Auth Headers -> Sends Request -> Parses JSON.
        Maps HTTP/network failures onto the error taxonomy.
        """
        if params:
            url += f"?{params}"

        req = self.build_request(url, method=method, auth_token=auth_token)
        send = self._send_request_with_retry if retry else self._send_request

        try:
            body = send(req)
        except HTTPError as e:
            if e.code == 401:
                raise AuthError(f"GitHub rejected the credential (401 Unauthorized) for {method} {url}.")
            elif e.code == 404:
                raise GitHubApiError(f"Resource not found at {url} (404). Check permissions or URL.", status=404)
            raise GitHubApiError(f"GitHub API Error: {e.code} {e.reason}", status=e.code)
        except (URLError, TimeoutError, ConnectionError, http.client.HTTPException) as e:
            raise UpstreamError(f"Network error connecting to GitHub: {str(e)}")

        if not body:
            return None

        try:
            return json.loads(body)
        except (KeyError, json.JSONDecodeError) as e:
            raise UpstreamError(f"Invalid API response: {str(e)}")

    def open_download(self, url: str, auth_token: Optional[str] = None):
        """Opens a streamed binary download. Caller closes the response."""
        req = self.build_request(url, auth_token=auth_token, accept="application/octet-stream")
        return urlopen(req, timeout=self.config.download_timeout)
