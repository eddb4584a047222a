# Logger.py

import threading
import traceback
from base64 import b64encode
from datetime import datetime
from json import dumps
from pathlib import Path
from platform import python_version, system
from typing import Any, Mapping, Optional

from Crypto.Cipher import AES, PKCS1_OAEP
from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad
from colorama import Fore, Style

from utils import VERSION

ERROR, WARNING, INFO, DEBUG = 1, 2, 3, 4

LEVELS = {
	ERROR: ("Error", Fore.RED),
	WARNING: ("Warning", Fore.YELLOW),
	INFO: ("Info", Fore.BLUE),
	DEBUG: ("Debug", Fore.LIGHTWHITE_EX),
}


def seal(key: RSA.RsaKey, text: str) -> str:
	"""Encrypt ``text`` for the holder of the private half of ``key``.

	Layout of the decoded blob: RSA-OAEP wrapped AES-128 key, then the CBC IV,
	then the padded ciphertext.
	"""
	session_key = get_random_bytes(16)
	cipher = AES.new(session_key, AES.MODE_CBC)
	body = cipher.encrypt(pad(text.encode("utf-8"), AES.block_size))
	wrapped = PKCS1_OAEP.new(key).encrypt(session_key)
	return b64encode(wrapped + cipher.iv + body).decode("utf-8")


def _describe_context(context: Mapping[str, Any]) -> str:
	try:
		return dumps(dict(context), ensure_ascii=True, default=repr)
	except (TypeError, ValueError):
		return repr(context)


class Logger:
	"""Appends one line per event to ``<file_name>_<date><file_ending>``.

	Lines are sealed with ``seal`` once a public key is loaded. With ``echo``
	set, each event is also printed in color.
	"""

	def __init__(self, app_name: str, file_name: str, file_ending: str = ".log", echo: bool = False):
		self.app_name = app_name
		self.file_name = file_name
		self.file_ending = file_ending
		self.echo = echo

		self.VERSION = f"v{VERSION}"
		self.key: Optional[RSA.RsaKey] = None
		self._lock = threading.Lock()

	def load_public_key(self, key: str):
		self.key = RSA.import_key(key)

	def _get_log_filename(self) -> Path:
		return Path(f"{self.file_name}_{datetime.now():%Y-%m-%d}{self.file_ending}")

	def _header(self) -> str:
		return "\n".join((
			"=" * 60,
			f"Application:  {self.app_name} {self.VERSION}",
			f"Started:      {datetime.now():%Y-%m-%d %H:%M:%S}",
			f"Platform:     {system()} / Python {python_version()}",
			f"Encrypted:    {self.key is not None}",
			"=" * 60,
		))

	def _compose(self, level: int, message: str, context: Optional[Mapping[str, Any]],
				 exc_info: Optional[BaseException], colored: bool = False) -> str:
		name, color = LEVELS[level]
		stamp = f"{datetime.now():%Y-%m-%d %H:%M:%S}"
		if colored:
			name = f"{color}{name}{Style.RESET_ALL}"
			stamp = f"{Fore.CYAN}{stamp}{Style.RESET_ALL}"

		parts = [message] if message else []
		if context:
			parts.append(f"context={_describe_context(context)}")
		if exc_info is not None:
			parts.append("exception=\n" + "".join(traceback.format_exception(exc_info)).rstrip())
		parts.append(f"thread={threading.current_thread().name}")
		return f"{stamp} - {name}: " + "\n".join(parts)

	def _encode(self, text: str) -> str:
		return text if self.key is None else seal(self.key, text)

	def log(self, level: int, message: str, *, context: Optional[Mapping[str, Any]] = None,
			exc_info: Optional[BaseException] = None) -> int:
		"""Record one event. Returns 1 on success, -1 for an unknown level, -2 when the file cannot be written."""
		if level not in LEVELS:
			return -1

		line = self._compose(level, message, context, exc_info)
		if self.echo:
			print(self._compose(level, message, context, exc_info, colored=True))

		path = self._get_log_filename()
		try:
			with self._lock:
				path.parent.mkdir(parents=True, exist_ok=True)
				fresh = not path.exists()
				with open(path, "a", encoding="utf-8") as f:
					if fresh:
						f.write(self._encode(self._header()) + "\n")
					f.write(self._encode(line) + "\n")
		except OSError as e:
			print(f"Error writing to log file {path}: {e}")
			return -2

		return 1

	def debug(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> int:
		return self.log(DEBUG, message, context=context)

	def info(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> int:
		return self.log(INFO, message, context=context)

	def warning(self, message: str, *, context: Optional[Mapping[str, Any]] = None,
				exc_info: Optional[BaseException] = None) -> int:
		return self.log(WARNING, message, context=context, exc_info=exc_info)

	def error(self, message: str, *, context: Optional[Mapping[str, Any]] = None,
			  exc_info: Optional[BaseException] = None) -> int:
		return self.log(ERROR, message, context=context, exc_info=exc_info)

	def log_exception(self, message: str, exception: BaseException, *,
					  context: Optional[Mapping[str, Any]] = None, level: int = ERROR) -> int:
		return self.log(level, message, context=context, exc_info=exception)
