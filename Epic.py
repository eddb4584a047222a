# Epic.py

import threading
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config import ClientSettings
from errors import (DecodeError, EpicError, InputError, NotFoundError, SecondFactorRequired,
                    ServiceError)
from Stats import DUO, SOLO, SQUAD, PlayerStats, bag_from_payload, get_vocabulary, normalize
from utils import AUTH_BASIC, AUTH_BEARER, Transport, parse_timestamp, strip_account_id

# Epic login surface
CSRF_URL = "https://www.epicgames.com/id/api/csrf"
LOGIN_URL = "https://www.epicgames.com/id/api/login"
MFA_URL = "https://www.epicgames.com/id/api/login/mfa"
ID_EXCHANGE_URL = "https://www.epicgames.com/id/api/exchange"

# Epic API endpoints
OAUTH_TOKEN_URL = "https://account-public-service-prod03.ol.epicgames.com/account/api/oauth/token"
OAUTH_EXCHANGE_URL = "https://account-public-service-prod03.ol.epicgames.com/account/api/oauth/exchange"
KILL_SESSION_URL = "https://account-public-service-prod03.ol.epicgames.com/account/api/oauth/sessions/kill"
ACCOUNT_LOOKUP_URL = "https://persona-public-service-prod06.ol.epicgames.com/persona/api/public/account"
ACCOUNT_INFO_URL = "https://account-public-service-prod03.ol.epicgames.com/account/api/public/account"

SERVER_STATUS_URL = ("https://lightswitch-public-service-prod06.ol.epicgames.com/lightswitch/api/service/bulk/status"
                     "?serviceId=Fortnite")
ACCOUNT_STATS_URL = "https://fortnite-public-service-prod11.ol.epicgames.com/fortnite/api/stats/accountId"
STATS_V2_URL = "https://statsproxy-public-service-live.ol.epicgames.com/statsproxy/api/statsv2/account"
WINS_LEADERBOARD_URL = ("https://fortnite-public-service-prod11.ol.epicgames.com/fortnite/api/leaderboards/type/global"
                        "/stat/br_placetop1_{platform}_m0{group}/window/weekly")

XSRF_COOKIE = "XSRF-TOKEN"
XSRF_HEADER = "x-xsrf-token"

# Platform types
PC = "pc"
XBOX = "xb1"
PS4 = "ps4"
PLATFORMS = (PC, XBOX, PS4)

LEGACY_PARTY_TOKENS = {SOLO: "_p2", DUO: "_p10", SQUAD: "_p9"}


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: str
    account_id: str
    client_id: str

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenSet":
        try:
            tokens = cls(
                access_token=payload["access_token"],
                refresh_token=payload["refresh_token"],
                expires_at=payload["expires_at"],
                account_id=payload.get("account_id", ""),
                client_id=payload.get("client_id", ""),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise DecodeError("token response is missing access_token, refresh_token or expires_at") from e
        if not tokens.access_token:
            raise DecodeError("token response carries an empty access_token")
        return tokens


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str

    def __repr__(self):
        return f"Credentials(email={self.email!r}, password='***')"

    def validated(self) -> "Credentials":
        email = (self.email or "").strip()
        if not email or not (self.password or "").strip():
            raise InputError("email and password are required")
        return Credentials(email, self.password)


@dataclass(frozen=True)
class AccountInfo:
    account_id: str
    display_name: str


@dataclass(frozen=True)
class Player:
    account: AccountInfo
    stats: PlayerStats


@dataclass(frozen=True)
class LeaderboardEntry:
    display_name: str
    rank: int
    wins: int


def _require(value: Optional[str], name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InputError(f"{name} is required")
    return value


class Session:
    """Holds the tokens of one authenticated account.

    The access token, refresh token and expiry always change together under
    ``_lock``; every reader goes through the same lock.
    """

    def __init__(self, transport: Transport, tokens: TokenSet, logger, launcher_token: str, game_token: str,
                 credentials: Optional[Credentials] = None):
        self.transport = transport
        self.logger = logger
        self.launcher_token = launcher_token
        self.game_token = game_token
        self.credentials = credentials

        self.account_id = tokens.account_id
        self.client_id = tokens.client_id

        self._access_token = tokens.access_token
        self._refresh_token = tokens.refresh_token
        self._expires_at = tokens.expires_at
        self._lock = threading.RLock()
        self._terminated = False

        self._renewer: Optional["TokenRenewer"] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.terminate()

    @property
    def access_token(self) -> str:
        with self._lock:
            return self._access_token

    @property
    def refresh_token(self) -> str:
        with self._lock:
            return self._refresh_token

    @property
    def expires_at(self) -> str:
        with self._lock:
            return self._expires_at

    @property
    def is_active(self) -> bool:
        with self._lock:
            return bool(self._access_token)

    @property
    def renewer(self) -> Optional["TokenRenewer"]:
        return self._renewer

    def snapshot(self) -> TokenSet:
        with self._lock:
            return TokenSet(self._access_token, self._refresh_token, self._expires_at,
                            self.account_id, self.client_id)

    def authorization(self) -> str:
        with self._lock:
            if not self._access_token:
                raise InputError("session is not active")
            return f"{AUTH_BEARER} {self._access_token}"

    def start_renewal(self, interval: float = 20.0, margin: float = 60.0) -> "TokenRenewer":
        if not self.is_active:
            raise InputError("session is not active")
        if self._renewer is not None and self._renewer.is_alive:
            return self._renewer
        self._renewer = TokenRenewer(self, self.logger, interval=interval, margin=margin).start()
        return self._renewer

    def refresh(self) -> TokenSet:
        """Trade the refresh token for a new token set. Epic invalidates the old access token."""
        refresh_token = self.refresh_token
        if not refresh_token:
            raise InputError("session has been terminated")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "includePerms": "true",
        }
        _, payload = self.transport.send("POST", OAUTH_TOKEN_URL, data=data,
                                         headers={"Authorization": f"{AUTH_BASIC} {self.game_token}"})
        tokens = TokenSet.from_payload(payload)

        with self._lock:
            terminated = self._terminated
            if not terminated:
                self._access_token = tokens.access_token
                self._refresh_token = tokens.refresh_token
                self._expires_at = tokens.expires_at

        if terminated:
            # terminate() ran while the grant was in flight.
            self._revoke(tokens.access_token)
            raise InputError("session has been terminated")

        self.logger.info("Access token refreshed", context={"account_id": self.account_id,
                                                            "expires_at": tokens.expires_at})
        return tokens

    def terminate(self) -> None:
        """Revoke the access token on Epic's side and clear local state.

        The revoke is best effort: local tokens are cleared even when it fails.
        """
        if self._renewer is not None:
            self._renewer.stop()

        with self._lock:
            self._terminated = True
            if self._access_token:
                self._revoke(self._access_token)

            self._access_token = ""
            self._refresh_token = ""
            self._expires_at = ""

    def _revoke(self, access_token: str) -> None:
        try:
            self.transport.send("DELETE", f"{KILL_SESSION_URL}/{access_token}", decode=False,
                                headers={"Authorization": f"{AUTH_BEARER} {access_token}"})
        except EpicError as e:
            self.logger.warning("Failed to revoke access token", context={"account_id": self.account_id},
                                exc_info=e)
        else:
            self.logger.info("Session token successfully deactivated.", context={"account_id": self.account_id})


class TokenRenewer:
    """Background thread refreshing a Session shortly before its token expires.

    Holds only a weak reference, so a discarded Session also ends the thread.
    """

    def __init__(self, session: Session, logger, interval: float = 20.0, margin: float = 60.0):
        self._session_ref = weakref.ref(session)
        self.logger = logger
        self.interval = interval
        self.margin = margin

        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"token-renewer-{session.account_id}",
                                        daemon=True)

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> "TokenRenewer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            session = self._session_ref()
            if session is None:
                break
            self.check(session)
            del session

    def check(self, session: Session) -> bool:
        """Refresh ``session`` if its token expires within the margin. Returns True when refreshed."""
        if not session.is_active:
            return False

        expires_at = session.expires_at
        try:
            expiry = parse_timestamp(expires_at)
        except ValueError as e:
            self.logger.warning("Unreadable token expiry, retrying next cycle",
                                context={"account_id": session.account_id, "expires_at": expires_at}, exc_info=e)
            return False

        remaining = (expiry - datetime.now(timezone.utc)).total_seconds()
        if remaining > self.margin:
            return False

        try:
            session.refresh()
        except Exception as e:
            self.logger.warning("Token renewal unsuccessful, retrying next cycle",
                                context={"account_id": session.account_id}, exc_info=e)
            return False

        self.logger.info("Token renewed successfully.", context={"account_id": session.account_id})
        return True


class Auth:
    def __init__(self, logger, settings: Optional[ClientSettings] = None, transport: Optional[Transport] = None):
        self.logger = logger
        self.settings = settings or ClientSettings()
        self.transport = transport if transport is not None else Transport.from_settings(logger, self.settings)

    def authenticate(self, credentials: Credentials, launcher_token: Optional[str] = None,
                     game_token: Optional[str] = None) -> Session:
        credentials = credentials.validated()
        launcher_token = _require(launcher_token or self.settings.launcher_token, "launcher client token")
        game_token = _require(game_token or self.settings.game_token, "game client token")

        xsrf = self._fetch_xsrf()

        data = {
            "email": credentials.email,
            "password": credentials.password,
            "rememberMe": "true",
        }
        try:
            self.transport.send("POST", LOGIN_URL, data=data, headers={XSRF_HEADER: xsrf}, decode=False)
        except ServiceError as e:
            self._raise_if_second_factor(e)
            self.logger.error("Credential submission rejected", context={"status_code": e.status_code})
            raise

        return self._complete(xsrf, launcher_token, game_token, credentials)

    def authenticate_with_second_factor(self, code: str, cookies: Mapping[str, str],
                                        launcher_token: Optional[str] = None,
                                        game_token: Optional[str] = None) -> Session:
        code = _require(code, "second factor code")
        if not cookies:
            raise InputError("cookies of the interrupted login are required")
        launcher_token = _require(launcher_token or self.settings.launcher_token, "launcher client token")
        game_token = _require(game_token or self.settings.game_token, "game client token")

        self.transport.load_cookies(cookies)
        xsrf = self._fetch_xsrf(carried=cookies.get(XSRF_COOKIE, ""))

        data = {
            "code": code,
            "method": "authenticator",
            "rememberDevice": "false",
        }
        try:
            self.transport.send("POST", MFA_URL, data=data, headers={XSRF_HEADER: xsrf}, decode=False)
        except ServiceError as e:
            self.logger.error("Second factor code rejected", context={"status_code": e.status_code})
            raise

        return self._complete(xsrf, launcher_token, game_token, None)

    def _fetch_xsrf(self, carried: str = "") -> str:
        headers = {XSRF_HEADER: carried} if carried else None
        self.transport.send("GET", CSRF_URL, headers=headers, decode=False)

        xsrf = self.transport.get_cookie(XSRF_COOKIE)
        if not xsrf:
            raise DecodeError(f"anti-forgery response did not set the {XSRF_COOKIE} cookie")
        return xsrf

    def _raise_if_second_factor(self, error: ServiceError) -> None:
        if error.status_code == 431 or "two_factor_authentication.required" in (error.body or ""):
            self.logger.info("Login requires a second factor code")
            raise SecondFactorRequired(error.status_code, error.body, self.transport.export_cookies(),
                                       error.url) from error

    def _complete(self, xsrf: str, launcher_token: str, game_token: str,
                  credentials: Optional[Credentials]) -> Session:
        _, payload = self.transport.send("GET", ID_EXCHANGE_URL, headers={XSRF_HEADER: xsrf})
        launcher = self._redeem(self._read_code(payload), launcher_token)

        _, payload = self.transport.send("GET", OAUTH_EXCHANGE_URL,
                                         headers={"Authorization": f"{AUTH_BEARER} {launcher.access_token}"})
        tokens = self._redeem(self._read_code(payload), game_token)

        session = Session(self.transport, tokens, self.logger, launcher_token, game_token, credentials)
        session.start_renewal(self.settings.renew_interval, self.settings.renew_margin)

        self.logger.info("Session successfully created.", context={"account_id": tokens.account_id})
        return session

    def _redeem(self, code: str, client_token: str) -> TokenSet:
        data = {
            "grant_type": "exchange_code",
            "exchange_code": code,
            "includePerms": "true",
            "token_type": "eg1",
        }
        _, payload = self.transport.send("POST", OAUTH_TOKEN_URL, data=data,
                                         headers={"Authorization": f"{AUTH_BASIC} {client_token}"})
        return TokenSet.from_payload(payload)

    @staticmethod
    def _read_code(payload: Any) -> str:
        code = payload.get("code") if isinstance(payload, dict) else None
        if not code:
            raise DecodeError("exchange response carries no code")
        return code


class Client:
    def __init__(self, session: Session, logger=None):
        self.session = session
        self.transport = session.transport
        self.logger = logger or session.logger

    def _request(self, method: str, url: str, **kwargs) -> Any:
        headers = {"Authorization": self.session.authorization()}
        headers.update(kwargs.pop("headers", None) or {})
        _, payload = self.transport.send(method, url, headers=headers, **kwargs)
        return payload

    def lookup_account(self, display_name: str) -> AccountInfo:
        display_name = _require(display_name, "player name")
        try:
            payload = self._request("GET", f"{ACCOUNT_LOOKUP_URL}/lookup", params={"q": display_name})
        except ServiceError as e:
            if e.status_code == 404:
                raise NotFoundError(f"player {display_name} not found") from e
            raise

        if not isinstance(payload, dict) or not payload.get("id"):
            raise NotFoundError(f"player {display_name} not found")
        return AccountInfo(payload["id"], payload.get("displayName", display_name))

    def query_player_stats(self, account_id: str, source: str = "v2") -> PlayerStats:
        account_id = _require(account_id, "account id")
        vocabulary = get_vocabulary(source)

        if vocabulary.name == "v1":
            url = f"{ACCOUNT_STATS_URL}/{account_id}/bulk/window/alltime"
        else:
            url = f"{STATS_V2_URL}/{account_id}"

        raw_bag = bag_from_payload(self._request("GET", url), vocabulary.name)
        if not raw_bag:
            raise NotFoundError(f"no statistics found for account {account_id}")

        self.logger.debug("Fetched stats", context={"account_id": account_id, "source": vocabulary.name,
                                                   "keys": len(raw_bag)})
        return normalize(raw_bag, account_id, vocabulary.name)

    def query_player(self, display_name: str, source: str = "v2") -> Player:
        account = self.lookup_account(display_name)
        try:
            stats = self.query_player_stats(account.account_id, source)
        except NotFoundError:
            raise NotFoundError(f"no statistics found for player {account.display_name}") from None
        return Player(account, stats)

    def get_account_names(self, account_ids: Iterable[str]) -> Dict[str, str]:
        # Epic strips the hyphens '-' in the request and in the answer.
        stripped = [strip_account_id(account_id) for account_id in account_ids if account_id]
        if not stripped:
            return {}

        payload = self._request("GET", ACCOUNT_INFO_URL, params=[("accountId", account_id) for account_id in stripped])
        if not isinstance(payload, list):
            raise DecodeError("account lookup response is not a list")

        names = {}
        for account in payload:
            if isinstance(account, dict) and account.get("id"):
                names[strip_account_id(account["id"])] = account.get("displayName", "")
        return names

    def resolve_leaderboard(self, entries: Sequence[Tuple[str, int, int]]) -> List[LeaderboardEntry]:
        """Join ranked ``(account_id, value, rank)`` tuples with display names."""
        names = self.get_account_names([account_id for account_id, _, _ in entries])
        return [
            LeaderboardEntry(display_name=names.get(strip_account_id(account_id), ""), rank=rank, wins=value)
            for account_id, value, rank in entries
        ]

    def get_wins_leaderboard(self, platform: str = PC, mode: str = SOLO) -> List[LeaderboardEntry]:
        """Top 50 players by weekly wins for one platform and party mode."""
        if platform not in PLATFORMS:
            raise InputError("invalid platform specified")
        if mode not in LEGACY_PARTY_TOKENS:
            raise InputError("invalid party mode specified")

        params = {
            "ownertype": "1",
            "pageNumber": "0",
            "itemsPerPage": "50",
        }
        url = WINS_LEADERBOARD_URL.format(platform=platform, group=LEGACY_PARTY_TOKENS[mode])
        # Epic expects an empty JSON array as the body.
        payload = self._request("POST", url, params=params, json=[])

        try:
            entries = [(item["accountId"], int(item["value"]), int(item["rank"])) for item in payload["entries"]]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError("leaderboard response has malformed entries") from e

        return self.resolve_leaderboard(entries)

    def check_status(self) -> Tuple[bool, str]:
        payload = self._request("GET", SERVER_STATUS_URL)
        if not isinstance(payload, list) or not payload:
            raise DecodeError("no status response received")

        status = payload[0]
        if not isinstance(status, dict):
            raise DecodeError("status response has a malformed entry")
        if status.get("status") == "UP":
            # The message lingers after the service comes back up.
            return True, ""
        return False, f"service is down: {status.get('message', '')}"
