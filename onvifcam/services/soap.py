"""XML/SOAP codec shared by every ONVIF component.

Responses are parsed with xmltodict into plain dicts and namespace prefixes
are stripped, so lookups use local names only ("Envelope", "Body", ...).
Attributes keep xmltodict's "@" prefix and element text lives under "#text".
Requests are built from small string templates wrapped in a SOAP 1.2
envelope that declares every prefix the templates use.
"""

import logging
import uuid
from typing import Any, Iterable, Optional
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape, quoteattr

import xmltodict

from onvifcam.exceptions import ProtocolFault

logger = logging.getLogger(__name__)

SOAP_ENV = "http://www.w3.org/2003/05/soap-envelope"
WSA = "http://www.w3.org/2005/08/addressing"
WSA_DISCOVERY = "http://schemas.xmlsoap.org/ws/2004/08/addressing"
WSD = "http://schemas.xmlsoap.org/ws/2005/04/discovery"
WSNT = "http://docs.oasis-open.org/wsn/b-2"
WSSE = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
WSSE_PASSWORD_DIGEST = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordDigest"
)
WSSE_BASE64_BINARY = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)
TDS = "http://www.onvif.org/ver10/device/wsdl"
TEV = "http://www.onvif.org/ver10/events/wsdl"
TT = "http://www.onvif.org/ver10/schema"
TNS1 = "http://www.onvif.org/ver10/topics"
DN = "http://www.onvif.org/ver10/network/wsdl"
TDC = "http://www.onvif.org/ver10/doorcontrol/wsdl"
CONCRETE_SET_DIALECT = "http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet"

DISCOVERY_TO = "urn:schemas-xmlsoap-org:ws:2005:04:discovery"
PROBE_ACTION = "http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe"

# WSDL operation name -> SOAP action URI
ACTIONS = {
    "GetDeviceInformation": f"{TDS}/GetDeviceInformation",
    "GetCapabilities": f"{TDS}/GetCapabilities",
    "GetServices": f"{TDS}/GetServices",
    "GetEventProperties": f"{TEV}/EventPortType/GetEventPropertiesRequest",
    "CreatePullPointSubscription": (
        f"{TEV}/EventPortType/CreatePullPointSubscriptionRequest"
    ),
    "PullMessages": f"{TEV}/PullPointSubscription/PullMessagesRequest",
    "Subscribe": f"{WSNT}/NotificationProducer/SubscribeRequest",
    "Renew": f"{WSNT}/SubscriptionManager/RenewRequest",
    "Unsubscribe": f"{WSNT}/SubscriptionManager/UnsubscribeRequest",
}

_ENVELOPE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    f'<s:Envelope xmlns:s="{SOAP_ENV}" xmlns:a="{WSA}" xmlns:tds="{TDS}"'
    f' xmlns:tev="{TEV}" xmlns:tt="{TT}" xmlns:wsnt="{WSNT}" xmlns:tns1="{TNS1}">'
    "<s:Header>{header}</s:Header>"
    "<s:Body>{body}</s:Body>"
    "</s:Envelope>"
)


def new_message_id() -> str:
    """RFC 4122 version 4 message identifier."""
    return f"uuid:{uuid.uuid4()}"


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _local_name(key: str) -> str:
    if key.startswith("@"):
        return "@" + key[1:].rpartition(":")[2]
    return key.rpartition(":")[2]


def strip_namespaces(node: Any) -> Any:
    """Recursively drop namespace prefixes and xmlns declarations."""
    if isinstance(node, list):
        return [strip_namespaces(item) for item in node]
    if not isinstance(node, dict):
        return node
    stripped: dict[str, Any] = {}
    for key, value in node.items():
        if key == "@xmlns" or key.startswith("@xmlns:"):
            continue
        name = _local_name(key)
        value = strip_namespaces(value)
        if name in stripped:
            # Same local name under different prefixes: merge into a list
            existing = stripped[name]
            existing = existing if isinstance(existing, list) else [existing]
            stripped[name] = existing + (value if isinstance(value, list) else [value])
        else:
            stripped[name] = value
    return stripped


def parse_xml(data: Any, strip: bool = True) -> dict:
    """Parse XML text into a dict tree.

    Raises:
        ProtocolFault: If the payload is not well-formed XML
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if not data or not data.strip():
        raise ProtocolFault("Empty XML payload")
    try:
        tree = xmltodict.parse(data.strip())
    except ExpatError as e:
        raise ProtocolFault(f"Malformed XML: {e}") from e
    return strip_namespaces(tree) if strip else tree


def as_list(node: Any) -> list:
    """xmltodict collapses single children; normalize to a list."""
    if node is None:
        return []
    if isinstance(node, list):
        return node
    return [node]


def find(tree: Any, *path: str) -> Any:
    """Walk ``path`` through the tree; the first element of a list is followed."""
    node = tree
    for key in path:
        if isinstance(node, list):
            node = node[0] if node else None
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def text_of(node: Any) -> Optional[str]:
    """Text content of an element, whether or not it carried attributes."""
    if isinstance(node, list):
        node = node[0] if node else None
    if node is None:
        return None
    if isinstance(node, dict):
        text = node.get("#text")
        return text.strip() if isinstance(text, str) else None
    return str(node).strip()


def attributes_of(node: Any) -> dict[str, str]:
    if isinstance(node, list):
        node = node[0] if node else None
    if not isinstance(node, dict):
        return {}
    return {k[1:]: v for k, v in node.items() if k.startswith("@")}


def envelope_body(tree: dict) -> dict:
    """Body element of a stripped envelope.

    Raises:
        ProtocolFault: If the tree is not a SOAP envelope
    """
    body = find(tree, "Envelope", "Body")
    if body is None:
        if find(tree, "Envelope") is None:
            raise ProtocolFault("Response is not a SOAP envelope")
        return {}
    return body if isinstance(body, dict) else {}


def parse_fault(tree: dict) -> Optional[str]:
    """Fault text from a stripped envelope, or None when there is no fault.

    Includes the subcode value (e.g. ter:NotAuthorized) when present.
    """
    fault = find(tree, "Envelope", "Body", "Fault")
    if fault is None:
        return None
    reason = text_of(find(fault, "Reason", "Text")) or text_of(find(fault, "faultstring"))
    subcode = text_of(find(fault, "Code", "Subcode", "Value"))
    parts = [p for p in (subcode, reason) if p]
    return " - ".join(parts) if parts else "Unspecified SOAP fault"


# ----------------------------------------------------------------------
# Building
# ----------------------------------------------------------------------


def build_envelope(body: str, header: str = "") -> str:
    return _ENVELOPE.format(header=header, body=body)


def soap_content_type(operation: Optional[str]) -> str:
    action = ACTIONS.get(operation or "")
    if action:
        return f'application/soap+xml; charset=utf-8; action="{action}"'
    return "application/soap+xml; charset=utf-8"


def addressing_header(
    to: str,
    operation: Optional[str] = None,
    reference_parameters: Optional[dict] = None,
) -> str:
    """WS-Addressing header used for calls on a subscription reference.

    ``reference_parameters`` maps element name to (text, attributes) as
    echoed back from the SubscriptionReference.
    """
    parts = [f"<a:MessageID>{new_message_id()}</a:MessageID>", f"<a:To>{escape(to)}</a:To>"]
    if operation in ACTIONS:
        parts.insert(0, f"<a:Action>{ACTIONS[operation]}</a:Action>")
    for name, (text, attrs) in (reference_parameters or {}).items():
        rendered = "".join(f" {k}={quoteattr(v)}" for k, v in attrs.items())
        parts.append(
            f'<{name} a:IsReferenceParameter="true"{rendered}>{escape(text)}</{name}>'
        )
    return "".join(parts)


def seconds_to_duration(seconds: float) -> str:
    """xsd:duration for a whole number of seconds (PT600S style)."""
    return f"PT{int(seconds)}S"


def get_device_information() -> str:
    return "<tds:GetDeviceInformation/>"


def get_capabilities(category: str = "All") -> str:
    return f"<tds:GetCapabilities><tds:Category>{category}</tds:Category></tds:GetCapabilities>"


def get_services(include_capability: bool = False) -> str:
    flag = "true" if include_capability else "false"
    return (
        "<tds:GetServices>"
        f"<tds:IncludeCapability>{flag}</tds:IncludeCapability>"
        "</tds:GetServices>"
    )


def get_event_properties() -> str:
    return "<tev:GetEventProperties/>"


def _topic_filter(topics: Iterable[str]) -> str:
    topics = [t for t in topics if t]
    if not topics:
        return ""
    expression = "|".join(escape(t) for t in topics)
    return (
        "<wsnt:Filter>"
        f'<wsnt:TopicExpression Dialect="{CONCRETE_SET_DIALECT}">{expression}'
        "</wsnt:TopicExpression>"
        "</wsnt:Filter>"
    )


def subscribe(listen_uri: str, termination: str, topics: Iterable[str] = ()) -> str:
    return (
        "<wsnt:Subscribe>"
        "<wsnt:ConsumerReference>"
        f"<a:Address>{escape(listen_uri)}</a:Address>"
        "</wsnt:ConsumerReference>"
        f"{_topic_filter(topics)}"
        f"<wsnt:InitialTerminationTime>{termination}</wsnt:InitialTerminationTime>"
        "</wsnt:Subscribe>"
    )


def create_pull_point_subscription(termination: str, topics: Iterable[str] = ()) -> str:
    return (
        "<tev:CreatePullPointSubscription>"
        f"{_topic_filter(topics)}"
        f"<tev:InitialTerminationTime>{termination}</tev:InitialTerminationTime>"
        "</tev:CreatePullPointSubscription>"
    )


def pull_messages(timeout: str, message_limit: int) -> str:
    return (
        "<tev:PullMessages>"
        f"<tev:Timeout>{timeout}</tev:Timeout>"
        f"<tev:MessageLimit>{message_limit}</tev:MessageLimit>"
        "</tev:PullMessages>"
    )


def renew(termination: str) -> str:
    return f"<wsnt:Renew><wsnt:TerminationTime>{termination}</wsnt:TerminationTime></wsnt:Renew>"


def unsubscribe() -> str:
    return "<wsnt:Unsubscribe/>"


def probe(probe_type: str, message_id: Optional[str] = None) -> str:
    """WS-Discovery Probe envelope for one device type (e.g. dn:NetworkVideoTransmitter)."""
    message_id = message_id or new_message_id()
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENV}" xmlns:a="{WSA_DISCOVERY}">'
        "<s:Header>"
        f'<a:Action s:mustUnderstand="1">{PROBE_ACTION}</a:Action>'
        f"<a:MessageID>{message_id}</a:MessageID>"
        "<a:ReplyTo><a:Address>"
        "http://schemas.xmlsoap.org/ws/2004/08/addressing/role/anonymous"
        "</a:Address></a:ReplyTo>"
        f'<a:To s:mustUnderstand="1">{DISCOVERY_TO}</a:To>'
        "</s:Header>"
        "<s:Body>"
        f'<Probe xmlns="{WSD}">'
        f'<d:Types xmlns:d="{WSD}" xmlns:dn="{DN}" xmlns:tds="{TDS}" xmlns:tdc="{TDC}">'
        f"{probe_type}</d:Types>"
        "</Probe>"
        "</s:Body>"
        "</s:Envelope>"
    )
