# utils.py

import platform
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import DecodeError, ServiceError, TransportError

VERSION = "0.3.0"

# Not spoofed; the game API's stance on third party clients is unknown.
USER_AGENT = (f"fortnite-stats/v{VERSION} python-requests/{requests.__version__} "
			  f"({platform.system()} {platform.machine()})")

AUTH_BEARER = "bearer"
AUTH_BASIC = "basic"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def create_session(proxy_url: Optional[str] = None) -> Session:
	session = Session()
	retry = Retry(
		total=2,  # Total number of retries
		read=3,  # Number of retries on read errors
		connect=2,  # Number of retries on connection errors
		backoff_factor=1,  # Backoff factor to apply between attempts
		status_forcelist=[500, 502, 503, 504],  # Retry on these status codes
		raise_on_status=False,  # Hand the last 5xx back instead of raising RetryError
	)
	adapter = HTTPAdapter(max_retries=retry)
	session.mount("https://", adapter)
	session.mount("http://", adapter)
	if proxy_url:
		session.proxies = {"http": proxy_url, "https": proxy_url}
	return session


class Transport:
	"""Sends requests for the auth flow and the API, keeping cookies between calls.

	Anything outside the 2xx range raises ``ServiceError`` carrying the raw body,
	connection failures raise ``TransportError`` and a body that is not JSON
	raises ``DecodeError``.
	"""

	def __init__(self, logger, timeout: float = 15.0, proxy_url: Optional[str] = None,
				 http: Optional[Session] = None):
		self.logger = logger
		self.timeout = timeout
		self.http = http if http is not None else create_session(proxy_url)

	@classmethod
	def from_settings(cls, logger, settings) -> "Transport":
		proxy_url = settings.proxy_url if settings.use_proxy else None
		return cls(logger, timeout=settings.timeout, proxy_url=proxy_url)

	def send(self, method: str, url: str, *, data: Optional[Mapping[str, Any]] = None, json: Any = None,
			 headers: Optional[Mapping[str, str]] = None, params: Any = None,
			 decode: bool = True) -> tuple[int, Any]:
		request_headers = {"User-Agent": USER_AGENT}
		if data is not None:
			request_headers["Content-Type"] = FORM_CONTENT_TYPE
		if headers:
			request_headers.update(headers)

		try:
			response = self.http.request(method, url, params=params, data=data, json=json,
										 headers=request_headers, timeout=self.timeout)
		except requests.RequestException as e:
			self.logger.warning("Request failed before a response was received",
								context={"method": method, "url": url, "error": str(e)})
			raise TransportError(f"{method} {url} failed: {e}") from e

		status_code = response.status_code
		if not 200 <= status_code < 300:
			body = response.text
			self.logger.warning("API request returned non-success status", context={
				"status_code": status_code,
				"url": url,
				"method": method,
				"response_preview": body[:400],
			})
			raise ServiceError(status_code, body, url)

		if not decode or status_code == 204 or not response.content:
			return status_code, None

		try:
			return status_code, response.json()
		except ValueError as e:
			self.logger.warning("Failed to decode JSON response", context={"url": url, "method": method})
			raise DecodeError(f"{method} {url} returned a body that is not JSON") from e

	def get_cookie(self, name: str) -> str:
		return self.http.cookies.get(name) or ""

	def load_cookies(self, cookies: Mapping[str, str]) -> None:
		for name, value in cookies.items():
			self.http.cookies.set(name, value)

	def export_cookies(self) -> dict[str, str]:
		return {cookie.name: cookie.value for cookie in self.http.cookies}


def ratio(numerator: int, denominator: int) -> float:
	if denominator <= 0:
		return 0.0  # Stop div of zero
	return numerator / denominator


def format_ratio(value: float) -> str:
	return f"{value:.2f}"


def strip_account_id(account_id: str) -> str:
	# The bulk account endpoint rejects hyphenated ids.
	return account_id.replace("-", "")


def parse_timestamp(value: str) -> datetime:
	"""Parse an RFC 3339 timestamp such as ``2018-03-01T12:00:00.000Z``."""
	if not value:
		raise ValueError("empty timestamp")
	parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed
