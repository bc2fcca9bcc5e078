import http.client
import logging
from functools import wraps
from time import sleep
from typing import Dict, List, Optional

import requests
import urllib3
from faker import Faker
from requests.exceptions import ChunkedEncodingError, ConnectionError, ProxyError, SSLError

from ...errors import AuthenticationFailed, NavigationFailed, TimeoutFailure

logger = logging.getLogger(__name__)

request_timeout = 30
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
http.client._MAXHEADERS = 1000
max_attempts = 3
retry_delay_s = 2


def attempts(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        last_error = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = f(*args, **kwargs)

                if response.status_code in (401, 403):
                    raise AuthenticationFailed(
                        f"HTTP {response.status_code} from {response.url}"
                    )

                return response
            except requests.Timeout as e:
                raise TimeoutFailure(f"method: {f.__name__} timed out: {e}") from e
            except (
                ChunkedEncodingError,
                ProxyError,
                SSLError,
                ConnectionError,
            ) as e:
                last_error = e
                logger.warning(
                    f"method: {f.__name__}, attempt {attempt}/{max_attempts}, Error: {e}, retrying..."
                )
                sleep(retry_delay_s)

        raise NavigationFailed(f"method: {f.__name__} gave up after {max_attempts} attempts: {last_error}")

    return wrapper


def logging_requests(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        response = f(*args, **kwargs)

        if response is not None and response.status_code != 200:
            logger.warning(
                "Unexpected response\n"
                f"Request: {args[1:]}, {kwargs.get('params')}\n"
                f"Code: {response.status_code}\n"
                f"Headers: {response.headers}\n"
                f"Content-Type: {response.headers.get('content-type')}"
            )

        return response

    return wrapper


class Client:
    """
    requests-based client for portals whose document viewer exposes plain
    per-page image URLs. Cookies are copied from the browser session so the
    portal treats both as the same visitor.
    """

    def __init__(self, cookies: Optional[List[dict]] = None, user_agent: Optional[str] = None, verify: bool = False):
        self.__session = requests.session()
        self.__user_agent = user_agent
        self.__verify = verify
        for cookie in cookies or []:
            self.__session.cookies.set(
                cookie["name"],
                cookie["value"],
                domain=cookie.get("domain", ""),
                path=cookie.get("path", "/"),
            )

    @property
    def base_headers(self):
        ua = self.__user_agent or Faker(
            providers=[
                "faker.providers.user_agent",
            ]
        ).chrome(version_from=118, version_to=126, build_from=6000, build_to=6400)
        return {
            "User-Agent": ua,
            "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }

    @logging_requests
    @attempts
    def post(self, url: str, data=None, **kwargs):
        kwargs["headers"] = self.__get_headers(kwargs.get("headers", {}))
        return self.__make_request("post", **{"url": url, "data": data, **kwargs})

    @logging_requests
    @attempts
    def get(self, url: str, **kwargs):
        kwargs["headers"] = self.__get_headers(kwargs.get("headers", {}))
        return self.__make_request("get", **{"url": url, **kwargs})

    def close(self):
        self.__session.close()

    def __make_request(self, method: str, **kwargs):
        kwargs.setdefault("timeout", request_timeout)
        if method == "post":
            return self.__session.post(**kwargs, verify=self.__verify)
        elif method == "get":
            return self.__session.get(**kwargs, verify=self.__verify)

    def __get_headers(self, additional: Dict[str, str]) -> dict:
        base = self.base_headers
        if additional:
            base.update(additional)

        return base
