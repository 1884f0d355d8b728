"""Tests for the SOAP codec helpers."""

import pytest

from helpers import envelope, fault_envelope
from onvifcam.exceptions import ProtocolFault
from onvifcam.services import soap


class TestParsing:
    """Tests for XML parsing and lookup helpers."""

    def test_namespaces_are_stripped(self) -> None:
        tree = soap.parse_xml(
            envelope('<tds:Thing tt:kind="x"><tt:Value>42</tt:Value></tds:Thing>')
        )
        thing = soap.find(tree, "Envelope", "Body", "Thing")
        assert thing["@kind"] == "x"
        assert soap.text_of(thing["Value"]) == "42"
        assert "@xmlns:s" not in tree["Envelope"]

    def test_same_local_name_merges_into_list(self) -> None:
        tree = soap.strip_namespaces({"root": {"a:Item": "1", "b:Item": "2"}})
        assert tree == {"root": {"Item": ["1", "2"]}}

    def test_malformed_xml(self) -> None:
        with pytest.raises(ProtocolFault, match="Malformed XML"):
            soap.parse_xml("<a><b></a>")

    def test_empty_payload(self) -> None:
        with pytest.raises(ProtocolFault):
            soap.parse_xml("   ")

    def test_find_follows_first_list_element(self) -> None:
        tree = {"a": [{"b": "first"}, {"b": "second"}]}
        assert soap.find(tree, "a", "b") == "first"
        assert soap.find(tree, "a", "missing") is None

    def test_text_and_attributes(self) -> None:
        node = {"@Name": "IsMotion", "@Value": "true", "#text": " x "}
        assert soap.text_of(node) == "x"
        assert soap.attributes_of(node) == {"Name": "IsMotion", "Value": "true"}
        assert soap.text_of(None) is None
        assert soap.as_list(None) == []
        assert soap.as_list("a") == ["a"]

    def test_envelope_body_requires_envelope(self) -> None:
        with pytest.raises(ProtocolFault):
            soap.envelope_body({"html": {}})


class TestFaults:
    """Tests for SOAP fault extraction."""

    def test_fault_with_subcode(self) -> None:
        tree = soap.parse_xml(fault_envelope("ter:NotAuthorized", "Sender not Authorized"))
        assert soap.parse_fault(tree) == "ter:NotAuthorized - Sender not Authorized"

    def test_soap11_faultstring(self) -> None:
        tree = soap.parse_xml(envelope("<s:Fault><faultstring>Oops</faultstring></s:Fault>"))
        assert soap.parse_fault(tree) == "Oops"

    def test_no_fault(self) -> None:
        tree = soap.parse_xml(envelope("<tds:GetDeviceInformationResponse/>"))
        assert soap.parse_fault(tree) is None


class TestBuilders:
    """Tests for request builders."""

    def test_envelope_parses(self) -> None:
        text = soap.build_envelope(soap.get_capabilities(), "")
        tree = soap.parse_xml(text)
        assert soap.text_of(
            soap.find(tree, "Envelope", "Body", "GetCapabilities", "Category")
        ) == "All"

    def test_content_type_carries_action(self) -> None:
        assert soap.soap_content_type("Renew") == (
            'application/soap+xml; charset=utf-8; '
            'action="http://docs.oasis-open.org/wsn/b-2/SubscriptionManager/RenewRequest"'
        )
        assert soap.soap_content_type("Unknown") == "application/soap+xml; charset=utf-8"

    def test_addressing_header_echoes_reference_parameters(self) -> None:
        header = soap.addressing_header(
            "http://192.168.1.64/onvif/Subscription?Idx=3",
            "Renew",
            {"SubscriptionId": ("7", {"xmlns:dom": "http://vendor/ns"})},
        )
        assert "<a:To>http://192.168.1.64/onvif/Subscription?Idx=3</a:To>" in header
        assert header.startswith("<a:Action>")
        assert (
            '<SubscriptionId a:IsReferenceParameter="true" xmlns:dom="http://vendor/ns">7'
            "</SubscriptionId>"
        ) in header
        assert "<a:MessageID>uuid:" in header

    def test_subscribe_with_topic_filter(self) -> None:
        body = soap.subscribe(
            "http://10.0.0.5:40001/event",
            "PT600S",
            ["tns1:RuleEngine/CellMotionDetector/Motion", "tns1:VideoSource/MotionAlarm"],
        )
        tree = soap.parse_xml(soap.build_envelope(body))
        request = soap.find(tree, "Envelope", "Body", "Subscribe")
        assert soap.text_of(soap.find(request, "ConsumerReference", "Address")) == (
            "http://10.0.0.5:40001/event"
        )
        expression = soap.text_of(soap.find(request, "Filter", "TopicExpression"))
        assert expression == "tns1:RuleEngine/CellMotionDetector/Motion|tns1:VideoSource/MotionAlarm"
        assert soap.text_of(request["InitialTerminationTime"]) == "PT600S"

    def test_subscribe_without_filter(self) -> None:
        assert "Filter" not in soap.subscribe("http://h/event", "PT60S")

    def test_pull_messages(self) -> None:
        body = soap.pull_messages("PT10S", 10)
        assert "<tev:Timeout>PT10S</tev:Timeout>" in body
        assert "<tev:MessageLimit>10</tev:MessageLimit>" in body

    def test_duration(self) -> None:
        assert soap.seconds_to_duration(600) == "PT600S"
        assert soap.seconds_to_duration(9.7) == "PT9S"

    def test_probe_message(self) -> None:
        text = soap.probe("dn:NetworkVideoTransmitter", "uuid:1234")
        tree = soap.parse_xml(text)
        assert soap.text_of(soap.find(tree, "Envelope", "Header", "MessageID")) == "uuid:1234"
        assert soap.text_of(
            soap.find(tree, "Envelope", "Body", "Probe", "Types")
        ) == "dn:NetworkVideoTransmitter"
