"""Authentication negotiation for ONVIF requests.

Supports three schemes, chosen per device from the first challenge:
- WS-Security UsernameToken (SOAP header, PasswordDigest)
- HTTP Digest (RFC 2617, MD5 by default)
- HTTP Basic

Per-device state lives in an AuthState which only the negotiator mutates.
"""

import base64
import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional
from urllib.parse import urlparse
from xml.sax.saxutils import escape

from onvifcam.exceptions import AuthError
from onvifcam.services import soap
from onvifcam.utils import wss_created

logger = logging.getLogger(__name__)

MAX_NONCE_LIFE = 300  # seconds

# Fault markers of servers that only speak WS-Security
WSS_FAULT_MARKERS = (
    "notauthorized",
    "not authorized",
    "failedauthentication",
    "invalidsecurity",
    "security token",
    "authority failure",
    "wsse",
)

DIGEST_ALGORITHMS = {
    "MD5": hashlib.md5,
    "SHA-1": hashlib.sha1,
    "SHA-256": hashlib.sha256,
}

WSS_ALGORITHMS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}

_CHALLENGE_PARAM = re.compile(r'(\w+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


class AuthScheme(str, Enum):
    NONE = "none"
    WSS = "wss"
    DIGEST = "digest"
    BASIC = "basic"


class AuthPhase(str, Enum):
    NO_AUTH = "no_auth"
    CHALLENGED = "challenged"
    AUTHENTICATED = "authenticated"
    STALE = "stale"


@dataclass
class ClientNonce:
    binary: bytes
    base64: str
    hex: str
    created: str  # ISO-8601 UTC stamp for WSS Created
    created_at: float  # epoch seconds

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass
class DigestChallenge:
    realm: str
    nonce: str
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: Optional[str] = None
    stale: bool = False


@dataclass
class AuthState:
    """Authentication state remembered for one device."""

    scheme: AuthScheme = AuthScheme.NONE
    phase: AuthPhase = AuthPhase.NO_AUTH
    challenge: Optional[DigestChallenge] = None
    client_nonce: Optional[ClientNonce] = None
    nonce_count: int = 0
    prior_nonce: Optional[str] = None
    stale: bool = False
    history: list[str] = field(default_factory=list)

    @property
    def realm(self) -> Optional[str]:
        return self.challenge.realm if self.challenge else None

    @property
    def server_nonce(self) -> Optional[str]:
        return self.challenge.nonce if self.challenge else None

    def reset(self) -> None:
        self.scheme = AuthScheme.NONE
        self.phase = AuthPhase.NO_AUTH
        self.challenge = None
        self.nonce_count = 0
        self.prior_nonce = None
        self.stale = False


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a WWW-Authenticate value into (scheme, params)."""
    scheme, _, rest = header.strip().partition(" ")
    params = {}
    for match in _CHALLENGE_PARAM.finditer(rest):
        key = match.group(1).lower()
        value = match.group(2) if match.group(2) is not None else match.group(3)
        params[key] = value
    return scheme.lower(), params


def generate_nonce(length: int, clock: Callable[[], float] = time.time) -> ClientNonce:
    """Fresh random client nonce of ``length`` bytes."""
    binary = os.urandom(length)
    return ClientNonce(
        binary=binary,
        base64=base64.b64encode(binary).decode("ascii"),
        hex=binary.hex(),
        created=wss_created(),
        created_at=clock(),
    )


class AuthNegotiator:
    """Builds credentials for a device from its AuthState.

    Example usage:
        negotiator = AuthNegotiator()
        scheme = negotiator.negotiate(device.auth, 401, response.headers, response.text)
        header = negotiator.build_authorization(device.auth, creds, "POST", url)
    """

    def __init__(
        self,
        nonce_lifetime: float = MAX_NONCE_LIFE,
        wss_nonce_length: int = 22,
        cnonce_length: int = 4,
        wss_algorithm: str = "sha1",
        clock: Callable[[], float] = time.time,
    ):
        if wss_algorithm.lower() not in WSS_ALGORITHMS:
            raise AuthError(f"Unsupported WSS digest algorithm: {wss_algorithm}")
        self.nonce_lifetime = nonce_lifetime
        self.wss_nonce_length = wss_nonce_length
        self.cnonce_length = cnonce_length
        self.wss_algorithm = wss_algorithm.lower()
        self._clock = clock

    # ------------------------------------------------------------------
    # Challenge handling
    # ------------------------------------------------------------------

    def is_challenge(self, status_code: int, headers: Mapping[str, str], body: str) -> bool:
        """True when a response asks for (different) credentials."""
        if status_code == 401:
            return True
        if status_code == 400:
            return bool(headers.get("www-authenticate")) or self._is_wss_fault(body)
        return False

    def negotiate(
        self,
        state: AuthState,
        status_code: int,
        headers: Mapping[str, str],
        body: str = "",
    ) -> AuthScheme:
        """Select a scheme from a 400/401 challenge and record it in ``state``.

        Raises:
            AuthError: If the challenge names an unsupported scheme or algorithm
        """
        challenges = self._www_authenticate(headers)
        if challenges:
            parsed = [parse_challenge(value) for value in challenges]
            digest = next((p for s, p in parsed if s == "digest"), None)
            if digest is not None:
                self._accept_digest(state, digest)
            elif any(s == "basic" for s, _ in parsed):
                state.scheme = AuthScheme.BASIC
                state.challenge = None
            else:
                schemes = ", ".join(s for s, _ in parsed)
                raise AuthError(f"Unsupported auth type: {schemes}")
        elif status_code == 401 or self._is_wss_fault(body):
            state.scheme = AuthScheme.WSS
            state.challenge = None
        else:
            raise AuthError(f"Unsupported auth challenge (HTTP {status_code})")

        if state.phase == AuthPhase.AUTHENTICATED and state.stale:
            state.phase = AuthPhase.STALE
        else:
            state.phase = AuthPhase.CHALLENGED
        state.history.append(state.scheme.value)
        logger.debug(f"Negotiated {state.scheme.value} authentication")
        return state.scheme

    def _accept_digest(self, state: AuthState, params: dict[str, str]) -> None:
        if "realm" not in params or "nonce" not in params:
            raise AuthError("Digest challenge missing realm or nonce")
        algorithm = params.get("algorithm")
        if algorithm and algorithm.upper() not in DIGEST_ALGORITHMS:
            raise AuthError(f"Unsupported algorithm: {algorithm}")
        qop = None
        if params.get("qop"):
            offered = [q.strip().lower() for q in params["qop"].split(",")]
            if "auth" not in offered:
                raise AuthError(f"Unsupported qop: {params['qop']}")
            qop = "auth"
        stale = params.get("stale", "").lower() == "true"
        state.scheme = AuthScheme.DIGEST
        state.stale = stale
        state.challenge = DigestChallenge(
            realm=params["realm"],
            nonce=params["nonce"],
            qop=qop,
            opaque=params.get("opaque"),
            algorithm=algorithm,
            stale=stale,
        )

    def confirm(self, state: AuthState) -> None:
        """Record that the last credentials were accepted."""
        if state.scheme != AuthScheme.NONE:
            state.phase = AuthPhase.AUTHENTICATED
            state.stale = False

    def update_next_nonce(self, state: AuthState, headers: Mapping[str, str]) -> None:
        """Apply a server supplied nextnonce (Digest mutual authentication)."""
        info = headers.get("authentication-info")
        if not info or not state.challenge:
            return
        _, params = parse_challenge(f"Digest {info}")
        next_nonce = params.get("nextnonce")
        if next_nonce and next_nonce != state.challenge.nonce:
            logger.debug("Server supplied a new digest nonce")
            state.challenge.nonce = next_nonce

    @staticmethod
    def _www_authenticate(headers: Mapping[str, str]) -> list[str]:
        get_list = getattr(headers, "get_list", None)
        if get_list is not None:
            return [v for v in get_list("www-authenticate") if v]
        value = headers.get("www-authenticate") or headers.get("WWW-Authenticate")
        return [value] if value else []

    @staticmethod
    def _is_wss_fault(body: str) -> bool:
        if not body:
            return False
        lowered = body.lower()
        if "fault" not in lowered:
            return False
        return any(marker in lowered for marker in WSS_FAULT_MARKERS)

    # ------------------------------------------------------------------
    # Nonces
    # ------------------------------------------------------------------

    def client_nonce(self, state: AuthState, length: int, reuse: bool) -> ClientNonce:
        """Return the cached nonce while fresh, otherwise generate a new one."""
        cached = state.client_nonce
        now = self._clock()
        if (
            reuse
            and cached is not None
            and len(cached.binary) == length
            and cached.age(now) <= self.nonce_lifetime
        ):
            return cached
        state.client_nonce = generate_nonce(length, self._clock)
        return state.client_nonce

    # ------------------------------------------------------------------
    # Credential builders
    # ------------------------------------------------------------------

    def build_security_header(self, state: AuthState, username: str, password: str) -> str:
        """WS-Security UsernameToken header XML."""
        if not username:
            raise AuthError("Missing credentials for WS-Security")
        nonce = self.client_nonce(state, self.wss_nonce_length, reuse=False)
        hasher = WSS_ALGORITHMS[self.wss_algorithm]
        digest_input = nonce.binary + nonce.created.encode("utf-8") + password.encode("utf-8")
        password_digest = base64.b64encode(hasher(digest_input).digest()).decode("ascii")
        return (
            f'<Security s:mustUnderstand="1" xmlns="{soap.WSSE}">'
            "<UsernameToken>"
            f"<Username>{escape(username)}</Username>"
            f'<Password Type="{soap.WSSE_PASSWORD_DIGEST}">{password_digest}</Password>'
            f'<Nonce EncodingType="{soap.WSSE_BASE64_BINARY}">{nonce.base64}</Nonce>'
            f'<Created xmlns="{soap.WSU}">{nonce.created}</Created>'
            "</UsernameToken>"
            "</Security>"
        )

    def build_authorization(
        self,
        state: AuthState,
        username: str,
        password: str,
        method: str,
        url: str,
    ) -> str:
        """HTTP Authorization header value for Digest or Basic state.

        Raises:
            AuthError: If the state does not hold an HTTP scheme
        """
        if not username:
            raise AuthError("Missing credentials for HTTP authentication")
        if state.scheme == AuthScheme.BASIC:
            token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            return f"Basic {token}"
        if state.scheme == AuthScheme.DIGEST and state.challenge:
            return self._digest_header(state, username, password, method, url)
        raise AuthError(f"No HTTP authorization for scheme {state.scheme.value}")

    def _digest_header(
        self,
        state: AuthState,
        username: str,
        password: str,
        method: str,
        url: str,
    ) -> str:
        challenge = state.challenge
        parsed = urlparse(url)
        uri = parsed.path or "/"
        if parsed.query:
            uri = f"{uri}?{parsed.query}"

        algorithm = (challenge.algorithm or "MD5").upper()
        hasher = DIGEST_ALGORITHMS.get(algorithm)
        if hasher is None:
            raise AuthError(f"Unsupported algorithm: {challenge.algorithm}")

        def h(value: str) -> str:
            return hasher(value.encode("utf-8")).hexdigest()

        ha1 = h(f"{username}:{challenge.realm}:{password}")
        ha2 = h(f"{method}:{uri}")

        parts = [
            f'username="{username}"',
            f'realm="{challenge.realm}"',
            f'nonce="{challenge.nonce}"',
            f'uri="{uri}"',
        ]
        if challenge.algorithm:
            parts.append(f"algorithm={challenge.algorithm}")

        if challenge.qop:
            if challenge.nonce == state.prior_nonce:
                state.nonce_count += 1
            else:
                state.nonce_count = 1
            state.prior_nonce = challenge.nonce
            cnonce = self.client_nonce(state, self.cnonce_length, reuse=True)
            nc = f"{state.nonce_count:08x}"
            response = h(f"{ha1}:{challenge.nonce}:{nc}:{cnonce.hex}:{challenge.qop}:{ha2}")
            parts.append(f'response="{response}"')
            parts.extend([f"qop={challenge.qop}", f"nc={nc}", f'cnonce="{cnonce.hex}"'])
        else:
            response = h(f"{ha1}:{challenge.nonce}:{ha2}")
            parts.append(f'response="{response}"')

        if challenge.opaque:
            parts.append(f'opaque="{challenge.opaque}"')
        return "Digest " + ", ".join(parts)
