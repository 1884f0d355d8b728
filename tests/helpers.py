"""SOAP payload builders shared by the test modules."""

import asyncio

from onvifcam.services import soap
from onvifcam.services.dispatcher import SoapResponse

SOAP_NAMESPACES = (
    'xmlns:s="http://www.w3.org/2003/05/soap-envelope" '
    'xmlns:a="http://www.w3.org/2005/08/addressing" '
    'xmlns:tds="http://www.onvif.org/ver10/device/wsdl" '
    'xmlns:tev="http://www.onvif.org/ver10/events/wsdl" '
    'xmlns:tt="http://www.onvif.org/ver10/schema" '
    'xmlns:wsnt="http://docs.oasis-open.org/wsn/b-2" '
    'xmlns:wstop="http://docs.oasis-open.org/wsn/t-1" '
    'xmlns:tns1="http://www.onvif.org/ver10/topics" '
    'xmlns:ter="http://www.onvif.org/ver10/error"'
)


def envelope(body: str) -> str:
    """Wrap body XML in a SOAP 1.2 envelope declaring the common prefixes."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<s:Envelope {SOAP_NAMESPACES}><s:Body>{body}</s:Body></s:Envelope>"
    )


def fault_envelope(subcode: str, reason: str) -> str:
    return envelope(
        "<s:Fault>"
        "<s:Code><s:Value>s:Sender</s:Value>"
        f"<s:Subcode><s:Value>{subcode}</s:Value></s:Subcode></s:Code>"
        f'<s:Reason><s:Text xml:lang="en">{reason}</s:Text></s:Reason>'
        "</s:Fault>"
    )


def soap_response(body: str) -> SoapResponse:
    """SoapResponse as the dispatcher returns it for ``body``."""
    text = envelope(body)
    return SoapResponse(body=soap.envelope_body(soap.parse_xml(text)), status_code=200, text=text)


async def block_forever(delay: float) -> None:
    """Sleep replacement that only returns by cancellation."""
    await asyncio.Event().wait()
