"""SOAP 1.1 / 1.2 over HTTP POST.

Envelopes are rendered from a jinja2 template. The body comes from the
command's ``-d`` payload or the request's test data: a full envelope is
sent as-is, anything else is wrapped. A Fault in the response fails the
result whatever the HTTP status.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from jinja2 import Template

from protocolos.kernel.models import Credentials, LogLevel, ProtocolType, SoapXmlConfig, utc_now
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    TransportResponse,
    merge_headers,
)
from protocolos.protocols.errors import ErrorCode, ProtocolError
from protocolos.tools import curl
from protocolos.tools.crypto import base64url_encode, generate_random_bytes

SOAP_VERSIONS: Dict[str, Dict[str, str]] = {
    "1.1": {
        "prefix": "soap",
        "namespace": "http://schemas.xmlsoap.org/soap/envelope/",
        "content_type": "text/xml; charset=utf-8",
    },
    "1.2": {
        "prefix": "soap12",
        "namespace": "http://www.w3.org/2003/05/soap-envelope",
        "content_type": "application/soap+xml; charset=utf-8",
    },
}

WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
PASSWORD_TYPE_BASE = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0#"
BASE64_ENCODING = (
    "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)

ENVELOPE_TEMPLATE = Template(
    """<?xml version="1.0" encoding="utf-8"?>
<{{ prefix }}:Envelope xmlns:{{ prefix }}="{{ namespace }}"{% if target_namespace %} xmlns:ns="{{ target_namespace }}"{% endif %}>
  <{{ prefix }}:Header>{{ header }}</{{ prefix }}:Header>
  <{{ prefix }}:Body>{{ body }}</{{ prefix }}:Body>
</{{ prefix }}:Envelope>"""
)

WSSE_TEMPLATE = Template(
    """<wsse:Security xmlns:wsse="{{ wsse_ns }}" xmlns:wsu="{{ wsu_ns }}">
    <wsse:UsernameToken wsu:Id="UsernameToken-{{ token_id }}">
      <wsse:Username>{{ username }}</wsse:Username>
      <wsse:Password Type="{{ password_type }}">{{ password }}</wsse:Password>
      <wsse:Nonce EncodingType="{{ encoding }}">{{ nonce }}</wsse:Nonce>
      <wsu:Created>{{ created }}</wsu:Created>
    </wsse:UsernameToken>
  </wsse:Security>"""
)

_FAULT_MARKERS = ("soap:Fault", "SOAP-ENV:Fault", "soap12:Fault", "env:Fault")
_ENVELOPE_RE = re.compile(r"<(?:[\w-]+:)?Envelope\b")


def escape_xml(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def build_soap_envelope(
    body: str,
    header: Optional[str] = None,
    version: str = "1.1",
    target_namespace: Optional[str] = None,
) -> str:
    """Wrap ``body`` (raw XML) in a SOAP envelope of the given version."""
    envelope_version = SOAP_VERSIONS[version]
    return ENVELOPE_TEMPLATE.render(
        prefix=envelope_version["prefix"],
        namespace=envelope_version["namespace"],
        header=header or "",
        body=body,
        target_namespace=target_namespace,
    )


def build_wsse_username_token(
    username: str,
    password: str,
    password_type: str = "PasswordText",
    created: Optional[datetime] = None,
) -> str:
    """WS-Security UsernameToken header block."""
    created = created or utc_now()
    return WSSE_TEMPLATE.render(
        wsse_ns=WSSE_NS,
        wsu_ns=WSU_NS,
        token_id=int(created.timestamp() * 1000),
        username=escape_xml(username),
        password=escape_xml(password),
        password_type=PASSWORD_TYPE_BASE + password_type,
        encoding=BASE64_ENCODING,
        nonce=base64url_encode(generate_random_bytes(16)),
        created=created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
    )


def build_soap_headers(version: str, soap_action: Optional[str] = None) -> Dict[str, str]:
    """Content-Type and SOAPAction for the version.

    SOAP 1.2 carries the action as a content-type parameter instead of a header.
    """
    content_type = SOAP_VERSIONS[version]["content_type"]
    if version == "1.2":
        if soap_action:
            content_type = f'{content_type}; action="{soap_action}"'
        return {"Content-Type": content_type}
    return {"Content-Type": content_type, "SOAPAction": f'"{soap_action or ""}"'}


def is_soap_fault(xml: str) -> bool:
    return any(marker in xml for marker in _FAULT_MARKERS) or "<faultcode>" in xml


def extract_soap_fault(xml: str) -> Optional[Dict[str, Optional[str]]]:
    """Return ``{code, message}`` from a SOAP 1.1 or 1.2 fault, or None."""
    code = extract_xml_element(xml, "faultcode")
    message = extract_xml_element(xml, "faultstring")
    if code is None and message is None:
        # SOAP 1.2: <Code><Value>..</Value></Code> and <Reason><Text>..</Text></Reason>
        code_block = extract_xml_element(xml, "Code")
        reason_block = extract_xml_element(xml, "Reason")
        code = extract_xml_element(code_block, "Value") if code_block else None
        message = extract_xml_element(reason_block, "Text") if reason_block else None
    if code is None and message is None:
        return None
    return {"code": code, "message": message}


def extract_xml_element(xml: str, element_name: str) -> Optional[str]:
    """Inner text of the first element with this local name (any prefix)."""
    pattern = re.compile(
        rf"<(?:[\w-]+:)?{re.escape(element_name)}(?:\s[^>]*)?>([\s\S]*?)</(?:[\w-]+:)?{re.escape(element_name)}>",
        re.IGNORECASE,
    )
    match = pattern.search(xml)
    return match.group(1).strip() if match else None


class SoapXmlHandler(ProtocolHandler):
    """Legacy enterprise XML-based web services."""

    protocol_type = ProtocolType.SOAP_XML
    config_model = SoapXmlConfig
    display_name = "SOAP/XML"
    description = "Legacy enterprise XML-based web services"

    def required_fields(self) -> List[str]:
        return ["endpoint"]

    def optional_fields(self) -> List[str]:
        return ["soap_action", "soap_version", "username", "password", "wsdl_url", "namespace"]

    def check_configuration(self, config: SoapXmlConfig, validation: ConfigValidation) -> None:
        self._check_url(validation, "endpoint", config.endpoint)
        self._check_url(validation, "wsdl_url", config.wsdl_url)
        if bool(config.username) != bool(config.password):
            validation.warnings.append("WS-Security needs both username and password")

    async def authenticate(self, config: SoapXmlConfig) -> AuthResult:
        """WS-Security credentials are rendered into each envelope; nothing to fetch."""
        extra: Dict[str, Any] = {}
        if config.username and config.password:
            extra["wsse_username"] = config.username
        return AuthResult(success=True, credentials=Credentials(token_type="", extra=extra))

    def security_header(self, config: SoapXmlConfig) -> Optional[str]:
        if config.username and config.password:
            return build_wsse_username_token(config.username, config.password)
        return None

    async def build_request(self, call: RequestCall, config: SoapXmlConfig, credentials: Credentials) -> OutgoingRequest:
        url = config.endpoint
        command_headers: Dict[str, str] = {}
        payload: Optional[str] = None
        if call.request.command.strip():
            parsed = self.prepare_command(call, base_url=config.endpoint, require_url=False)
            url = parsed.url or config.endpoint
            command_headers = parsed.headers
            payload = parsed.body
        if not payload and call.request.test_data:
            payload = self.resolve_text(call, call.request.test_data)
        if not payload:
            raise ProtocolError("No SOAP body found", self.protocol_type.value, ErrorCode.PARSE_ERROR)

        if _ENVELOPE_RE.search(payload):
            envelope = payload
        else:
            envelope = build_soap_envelope(
                payload, self.security_header(config), config.soap_version, config.namespace
            )
        call.log(LogLevel.INFO, f"SOAP {config.soap_version} request to {url}")
        headers = merge_headers(build_soap_headers(config.soap_version, config.soap_action), command_headers)
        headers, url = self.with_credentials(headers, url, credentials)
        return OutgoingRequest("POST", url, headers, envelope)

    def postprocess(
        self, call: RequestCall, config: SoapXmlConfig, response: TransportResponse, body: Any
    ) -> Tuple[Any, Optional[str]]:
        text = response.text
        if not is_soap_fault(text):
            return body, None
        fault = extract_soap_fault(text) or {}
        call.log(LogLevel.ERROR, "SOAP Fault received")
        message = fault.get("message") or "SOAP Fault in response"
        if fault.get("code"):
            message = f"{fault['code']}: {message}"
        return body, message

    def generate_sample_curl(self, config: SoapXmlConfig) -> str:
        version = config.soap_version
        return curl.stringify(
            curl.ParsedCommand(
                method="POST",
                url=config.endpoint or "https://api.example.com/soap",
                headers=build_soap_headers(version, config.soap_action or "http://example.com/Action"),
                body=build_soap_envelope(
                    "<ns:GetData><ns:id>123</ns:id></ns:GetData>",
                    version=version,
                    target_namespace=config.namespace or "http://example.com/",
                ),
            )
        )
