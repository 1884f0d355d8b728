"""SOAP request dispatcher with auth, retry and liveness detection.

Every ONVIF call for a device goes through RequestDispatcher.send(), which
attaches the credentials the AuthNegotiator derived for that device, retries
transient failures and flags the device offline when it stops answering.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx

from onvifcam.config import Settings, get_settings
from onvifcam.exceptions import AuthError, ProtocolFault, TransportError
from onvifcam.services import soap
from onvifcam.services.auth import AuthNegotiator, AuthScheme
from onvifcam.services.device import DeviceContext, DeviceStatus

logger = logging.getLogger(__name__)

# Connection failures that mean the device is gone rather than busy
UNREACHABLE_PATTERNS = re.compile(
    r"unreachable|no route|refused|timed? ?out|timeout|name or service not known",
    re.IGNORECASE,
)


@dataclass
class SoapResponse:
    """Parsed response of a successful SOAP call."""

    body: dict
    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)


class RequestDispatcher:
    """Sends SOAP operations to devices.

    Example usage:
        dispatcher = RequestDispatcher()
        response = await dispatcher.send(
            device, "GetCapabilities", device.identity.device_service_address,
            soap.get_capabilities(),
        )
        caps = soap.find(response.body, "GetCapabilitiesResponse", "Capabilities")
        await dispatcher.close()
    """

    def __init__(
        self,
        negotiator: Optional[AuthNegotiator] = None,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.negotiator = negotiator or AuthNegotiator(
            nonce_lifetime=self.settings.nonce_lifetime,
            wss_nonce_length=self.settings.wss_nonce_length,
            cnonce_length=self.settings.http_cnonce_length,
            wss_algorithm=self.settings.wss_digest_algorithm,
        )
        self._client = client
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        device: DeviceContext,
        operation: str,
        service_uri: str,
        body: str,
        timeout: Optional[float] = None,
        header: str = "",
    ) -> SoapResponse:
        """Send one SOAP operation, negotiating auth on the way.

        Args:
            device: Target device context (auth state is updated in place)
            operation: WSDL operation name, used for the action parameter
            service_uri: Service endpoint URL
            body: Request body XML (inside s:Body)
            timeout: Per-attempt timeout, defaults to the request timeout
            header: Extra SOAP header XML (WS-Addressing for subscriptions)

        Raises:
            TransportError: Device unreachable (it has been marked offline)
            ProtocolFault: SOAP fault or malformed response after all attempts
            AuthError: Credentials rejected or challenge not supported
        """
        timeout = timeout or self.settings.request_timeout
        attempts = max(1, self.settings.request_attempts)
        challenged = False
        last_error: Optional[Exception] = None

        attempt = 0
        while attempt < attempts:
            attempt += 1
            try:
                response = await self._post(device, operation, service_uri, body, header, timeout)
            except httpx.HTTPError as e:
                reason = str(e) or type(e).__name__
                if isinstance(e, httpx.TimeoutException) or UNREACHABLE_PATTERNS.search(reason):
                    device.mark_offline(reason)
                    raise TransportError(
                        f"{operation} to {service_uri} failed: {reason}", unreachable=True
                    ) from e
                logger.debug(f"{operation} attempt {attempt} to {device.label} failed: {reason}")
                last_error = TransportError(f"{operation} to {service_uri} failed: {reason}")
                if attempt < attempts:
                    await self._sleep(self.settings.retry_delay)
                continue

            text = response.text
            if self.negotiator.is_challenge(response.status_code, response.headers, text):
                if challenged and not self._is_stale(response.headers):
                    device.set_status(DeviceStatus.AUTH_FAILED)
                    raise AuthError(f"{device.label} rejected credentials for {operation}")
                try:
                    scheme = self.negotiator.negotiate(
                        device.auth, response.status_code, response.headers, text
                    )
                except AuthError:
                    device.set_status(DeviceStatus.AUTH_FAILED)
                    raise
                logger.debug(f"{device.label} challenged {operation}, using {scheme.value}")
                challenged = True
                # Retry with credentials right away, no delay
                continue

            # Any HTTP answer means the device is alive
            device.mark_online()

            if response.status_code == 200:
                self.negotiator.confirm(device.auth)
                self.negotiator.update_next_nonce(device.auth, response.headers)
                try:
                    tree = soap.parse_xml(text)
                    fault = soap.parse_fault(tree)
                except ProtocolFault as e:
                    last_error = e
                    logger.warning(f"{operation} from {device.label} returned bad XML: {e}")
                else:
                    if fault is None:
                        return SoapResponse(
                            body=soap.envelope_body(tree),
                            status_code=200,
                            text=text,
                            headers=dict(response.headers),
                        )
                    last_error = ProtocolFault(fault, 200)
                    logger.warning(f"{operation} on {device.label} faulted: {fault}")
            else:
                last_error = self._fault_from(response)
                logger.warning(f"{operation} on {device.label} failed: {last_error}")

            if attempt < attempts:
                await self._sleep(self.settings.retry_delay)

        if isinstance(last_error, TransportError):
            device.mark_offline(str(last_error))
            raise last_error
        if last_error is not None:
            raise last_error
        raise AuthError(f"{device.label} kept challenging {operation}")

    async def _post(
        self,
        device: DeviceContext,
        operation: str,
        service_uri: str,
        body: str,
        header: str,
        timeout: float,
    ) -> httpx.Response:
        headers = {"Content-Type": soap.soap_content_type(operation)}
        auth = device.auth
        creds = device.credentials
        if auth.scheme == AuthScheme.WSS:
            header = self.negotiator.build_security_header(
                auth, creds.username, creds.password
            ) + header
        elif auth.scheme in (AuthScheme.DIGEST, AuthScheme.BASIC):
            headers["Authorization"] = self.negotiator.build_authorization(
                auth, creds.username, creds.password, "POST", service_uri
            )

        payload = soap.build_envelope(body, header)
        client = await self._get_client()
        return await client.post(
            service_uri, content=payload.encode("utf-8"), headers=headers, timeout=timeout
        )

    @staticmethod
    def _is_stale(headers: httpx.Headers) -> bool:
        return any(
            "stale=true" in value.replace('"', "").replace(" ", "").lower()
            for value in headers.get_list("www-authenticate")
        )

    @staticmethod
    def _fault_from(response: httpx.Response) -> ProtocolFault:
        try:
            fault = soap.parse_fault(soap.parse_xml(response.text))
        except ProtocolFault:
            fault = None
        return ProtocolFault(fault or response.reason_phrase or "Request failed", response.status_code)
