"""
pNode Crawler - pRPC Client

JSON-RPC 2.0 over HTTP for talking to Xandeum pNodes, and the peer
directory client that asks the bootstrap node for the current pod list.

Wire format:
    request:  {"jsonrpc": "2.0", "id": <ms timestamp>, "method": "get-pods", "params": []}
    response: {"jsonrpc": "2.0", "id": ..., "result": {...}} or {..., "error": {...}}
"""

import logging
import time
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from crawler_errors import DirectoryError, RpcError
from node_models import Pod

logger = logging.getLogger(__name__)

USER_AGENT = "pnode-crawler/1.0"

# Bootstrap requests are retried by the transport on gateway errors only;
# the stats prober runs its own retry policy instead.
DIRECTORY_TRANSPORT_RETRIES = 2
DIRECTORY_RETRY_BACKOFF = 0.5


def build_session(pool_maxsize: int = 10, max_retries: Retry | int = 0) -> requests.Session:
    """Set up an HTTP session with connection pooling."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
        max_retries=max_retries,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    })
    return session


class PrpcClient:
    """Thin JSON-RPC 2.0 client on top of a shared requests session."""

    def __init__(self, session: requests.Session | None = None, timeout: float = 3.0):
        self.session = session or build_session()
        self.timeout = timeout

    def call(
        self,
        url: str,
        method: str,
        params: list | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Perform one JSON-RPC call and return its result.

        Raises:
            requests.RequestException: transport failures and HTTP errors
            ValueError: body is not a JSON-RPC response object
            RpcError: the response carried an error object
        """
        payload = {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000),
            "method": method,
            "params": params or [],
        }
        response = self.session.post(
            url,
            json=payload,
            timeout=timeout if timeout is not None else self.timeout,
        )
        response.raise_for_status()

        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"JSON-RPC response must be an object, got {type(body).__name__}")

        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(error.get("code"), str(error.get("message", "unknown error")), url=url)
            raise RpcError(None, str(error), url=url)

        return body.get("result")

    def close(self) -> None:
        self.session.close()


def parse_pods_result(result: Any) -> list[Pod]:
    """
    Validate a get-pods result into Pod records.

    Raises DirectoryError if the result is not {"pods": [...]}, if any pod
    fails validation, or if the list is empty.
    """
    if not isinstance(result, dict):
        raise DirectoryError(
            f"get-pods result must be an object, got {type(result).__name__}"
        )

    raw_pods = result.get("pods")
    if not isinstance(raw_pods, list):
        raise DirectoryError("get-pods result is missing a pods list")

    pods = []
    for index, raw in enumerate(raw_pods):
        try:
            pods.append(Pod.from_dict(raw))
        except ValueError as e:
            raise DirectoryError(f"Invalid pod at index {index}: {e}", cause=e) from e

    if not pods:
        raise DirectoryError("get-pods returned no pods")

    return pods


class DirectoryClient:
    """Fetches the current peer list from a bootstrap pNode."""

    def __init__(
        self,
        bootstrap_url: str,
        timeout: float = 10.0,
        client: PrpcClient | None = None,
    ):
        self.bootstrap_url = bootstrap_url
        self.timeout = timeout
        if client is None:
            retry_strategy = Retry(
                total=DIRECTORY_TRANSPORT_RETRIES,
                backoff_factor=DIRECTORY_RETRY_BACKOFF,
                status_forcelist=[502, 503, 504],
                allowed_methods=frozenset(["POST"]),
                raise_on_status=False,
            )
            client = PrpcClient(build_session(max_retries=retry_strategy), timeout=timeout)
        self.client = client

    def get_pods(self) -> list[Pod]:
        """Return the validated pod list or raise DirectoryError."""
        logger.debug(f"Fetching pods from bootstrap node {self.bootstrap_url}")
        try:
            result = self.client.call(self.bootstrap_url, "get-pods", [], timeout=self.timeout)
        except RpcError as e:
            raise DirectoryError(f"Bootstrap node returned an error: {e.message}", cause=e) from e
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"get-pods request failed: {type(e).__name__}", cause=e) from e

        pods = parse_pods_result(result)
        logger.debug(f"Retrieved {len(pods)} pods")
        return pods

    def close(self) -> None:
        self.client.close()
