"""
SOAP 1.1 envelopes for the UPnP AVTransport and RenderingControl services
"""

import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

AVTRANSPORT_SERVICE_TYPE = "urn:schemas-upnp-org:service:AVTransport:1"
RENDERING_CONTROL_SERVICE_TYPE = "urn:schemas-upnp-org:service:RenderingControl:1"
SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"

_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(text: str) -> str:
    return escape(text, _ENTITIES)


def soap_headers(service_type: str, action: str) -> Dict[str, str]:
    return {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPACTION": f'"{service_type}#{action}"',
    }


def build_envelope(service_type: str, action: str, arguments: List[Tuple[str, str]]) -> bytes:
    """Arguments are (name, value) pairs in the order the action declares them"""
    args_xml = "".join(f"<{name}>{escape_xml(str(value))}</{name}>" for name, value in arguments)
    envelope = (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENV}" s:encodingStyle="{SOAP_ENCODING}">'
        "<s:Body>"
        f'<u:{action} xmlns:u="{service_type}">{args_xml}</u:{action}>'
        "</s:Body>"
        "</s:Envelope>"
    )
    return envelope.encode("utf-8")


def set_av_transport_uri_arguments(media_url: str, metadata: str = "") -> List[Tuple[str, str]]:
    return [("InstanceID", "0"), ("CurrentURI", media_url), ("CurrentURIMetaData", metadata)]


def play_arguments(speed: str = "1") -> List[Tuple[str, str]]:
    return [("InstanceID", "0"), ("Speed", speed)]


def parse_fault(body: bytes) -> Dict[str, Optional[str]]:
    """Pull faultcode/faultstring and the UPnP errorCode/errorDescription out of a fault body"""
    fault = {
        "fault_code": None,
        "fault_string": None,
        "upnp_error_code": None,
        "upnp_error_description": None,
    }
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return fault

    fault["fault_code"] = root.findtext(".//{*}faultcode")
    fault["fault_string"] = root.findtext(".//{*}faultstring")
    fault["upnp_error_code"] = root.findtext(".//{*}errorCode")
    fault["upnp_error_description"] = root.findtext(".//{*}errorDescription")
    return fault


def has_fault(body: bytes) -> bool:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return False
    return root.find(".//{*}Fault") is not None


def response_value(body: bytes, name: str) -> Optional[str]:
    """Value of an output argument in an action response, None if absent"""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None
    return root.findtext(f".//{{*}}{name}")
