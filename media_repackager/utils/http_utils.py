import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from media_repackager.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient for object storage requests.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    kwargs.setdefault("timeout", settings.http_timeout)
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


@retry(
    stop=stop_after_attempt(settings.http_retries),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(DownloadError),
    reraise=True,
)
async def request_with_retry(
    client: httpx.AsyncClient, method: str, url: str, stream: bool = False, **kwargs
) -> httpx.Response:
    """
    Send a request, retrying timeouts, transport errors and 5xx responses.

    A 404 response is returned to the caller unchanged so that existence checks
    do not pay for retries.

    Raises:
        DownloadError: If the request still fails after all attempts.
    """
    try:
        request = client.build_request(method, url, **kwargs)
        response = await client.send(request, stream=stream)
    except httpx.TimeoutException:
        logger.warning(f"Timeout while requesting {method} {url}")
        raise DownloadError(409, f"Timeout while requesting {url}")
    except httpx.TransportError as e:
        logger.warning(f"Transport error while requesting {method} {url}: {e}")
        raise DownloadError(502, f"Transport error while requesting {url}: {e}")

    if response.status_code == 404:
        return response
    if response.status_code >= 500:
        await response.aclose()
        logger.warning(f"HTTP error {response.status_code} while requesting {method} {url}")
        raise DownloadError(response.status_code, f"HTTP error {response.status_code} while requesting {url}")
    return response
