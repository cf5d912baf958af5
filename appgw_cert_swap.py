#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# appgw_cert_swap.py - Add, replace, remove and inventory TLS certificates on Azure Application Gateway
#                      and keep HTTPS listeners bound to them without a downtime window.
#
# Features:
#  - Two store types: AzureAppGW (alias is the certificate name) and AppGwBin (alias is the HTTPS listener name)
#  - Temp-swap replacement: a listener is repointed to a temporary certificate before the old one is removed
#  - Freshly created certificates are deleted again when the listener binding fails
#  - Listener-centric inventory with partial-failure (Warning) reporting
#  - Key Vault backed gateway certificates resolved during inventory
#  - Application Gateway discovery across one or more tenants
#  - Client secret or client certificate authentication through azure-identity
#  - Public, China, Germany and US Government clouds
#  - YAML config (-C/--config) merging with CLI arguments
#  - Platform job files (--job) for management, inventory and discovery jobs
#  - Dry-run mode that plans the operation without changing the gateway
#  - Logging with --log FILE and --log-level {standard,debug}
#  - Operation correlation IDs and sensitive data scrubbing in logs
#
# Version: 1.0.0
#
# MIT License
# Copyright (c) 2025 CyB0rgg <dev@bluco.re>

import argparse
import base64
import datetime
import json
import re
import sys
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, List, Union, Callable
from urllib.parse import urlparse

# Dependency checking with better error messages
missing_msgs = []

try:
    from cryptography import x509
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
    from cryptography.x509.oid import NameOID
except ImportError as e:
    missing_msgs.append(("[cryptography]", "pip3 install cryptography", "sudo apt-get install python3-cryptography", str(e)))

try:
    import yaml as yml
except ImportError:
    yml = None

try:
    from azure.core.exceptions import AzureError
    from azure.identity import CertificateCredential, ClientSecretCredential
    from azure.keyvault.secrets import SecretClient
    from azure.mgmt.network import NetworkManagementClient
    from azure.mgmt.network.models import ApplicationGatewaySslCertificate, SubResource
    from azure.mgmt.resource import SubscriptionClient
except ImportError as e:
    missing_msgs.append((
        "[azure]",
        "pip3 install azure-identity azure-mgmt-network azure-mgmt-resource azure-keyvault-secrets",
        "sudo apt-get install python3-azure",
        str(e),
    ))

if missing_msgs:
    for pkg, pip_hint, apt_hint, error in missing_msgs:
        print(f"[!] Missing required Python module: {pkg}")
        print(f"    pip:   {pip_hint}")
        print(f"    apt:   {apt_hint}")
        print(f"    error: {error}")
    sys.exit(1)

VERSION = "1.0.0"
PKCS12_CONTENT_TYPE = "application/x-pkcs12"

# ---------------------------
# Configuration & Validation
# ---------------------------

class LogLevel(Enum):
    """Supported log levels."""
    STANDARD = "standard"
    DEBUG = "debug"

class AzureCloud(Enum):
    """Azure clouds with their authority host and Resource Manager endpoint."""
    PUBLIC = ("public", "https://login.microsoftonline.com", "https://management.azure.com")
    CHINA = ("china", "https://login.chinacloudapi.cn", "https://management.chinacloudapi.cn")
    GERMANY = ("germany", "https://login.microsoftonline.de", "https://management.microsoftazure.de")
    GOVERNMENT = ("government", "https://login.microsoftonline.us", "https://management.usgovcloudapi.net")

    def __init__(self, label: str, authority_host: str, resource_manager: str):
        self.label = label
        self.authority_host = authority_host
        self.resource_manager = resource_manager

    @property
    def resource_manager_scope(self) -> str:
        return f"{self.resource_manager}/.default"

    @classmethod
    def from_name(cls, name: Optional[str]) -> "AzureCloud":
        """Resolve a cloud by name; empty means the public cloud."""
        if not name or not name.strip():
            return cls.PUBLIC
        wanted = name.strip().lower()
        for cloud in cls:
            if cloud.label == wanted:
                return cloud
        raise ConfigurationError(f"azure_cloud must be one of {[c.label for c in cls]}, got: {name}")

class BindingPolicy(Enum):
    """How the alias of an operation request is interpreted."""
    CERTIFICATE = "certificate"  # alias names the gateway certificate
    LISTENER = "listener"        # alias names the HTTPS listener

class StoreType(Enum):
    """Certificate store types and the binding policy each one uses."""
    AZURE_APP_GW = "AzureAppGW"
    APP_GW_BIN = "AppGwBin"

    @property
    def binding_policy(self) -> BindingPolicy:
        if self is StoreType.APP_GW_BIN:
            return BindingPolicy.LISTENER
        return BindingPolicy.CERTIFICATE

    @classmethod
    def from_name(cls, name: str) -> "StoreType":
        for store_type in cls:
            if store_type.value.lower() == (name or "").strip().lower():
                return store_type
        raise ConfigurationError(f"store_type must be one of {[s.value for s in cls]}, got: {name}")

_RESOURCE_ID_RE = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)/resourceGroups/(?P<group>[^/]+)"
    r"/providers/Microsoft\.Network/applicationGateways/(?P<name>[^/]+)/?$",
    re.IGNORECASE,
)

@dataclass(frozen=True)
class GatewayResourceId:
    """Parsed Application Gateway resource ID."""
    subscription_id: str
    resource_group: str
    name: str

    @classmethod
    def parse(cls, resource_id: str) -> "GatewayResourceId":
        match = _RESOURCE_ID_RE.match((resource_id or "").strip())
        if not match:
            raise ConfigurationError(
                "resource_id must look like /subscriptions/<id>/resourceGroups/<group>"
                f"/providers/Microsoft.Network/applicationGateways/<name>, got: {resource_id}"
            )
        return cls(match.group("subscription"), match.group("group"), match.group("name"))

    def __str__(self) -> str:
        return (f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
                f"/providers/Microsoft.Network/applicationGateways/{self.name}")

@dataclass(frozen=True)
class ClientSecret:
    """Service principal secret."""
    secret: str = field(repr=False)

@dataclass(frozen=True)
class ClientCertificate:
    """Service principal certificate (PEM with private key, or PKCS#12)."""
    path: str
    password: Optional[str] = field(default=None, repr=False)

CredentialKind = Union[ClientSecret, ClientCertificate]

@dataclass
class Config:
    """Configuration container with validation."""
    tenant_id: str
    application_id: str
    client_secret: Optional[str] = field(default=None, repr=False)
    client_cert: Optional[str] = None
    client_cert_password: Optional[str] = field(default=None, repr=False)
    azure_cloud: str = "public"
    resource_id: Optional[str] = None
    store_type: str = StoreType.AZURE_APP_GW.value
    dirs: Optional[str] = None
    alias: Optional[str] = None
    pfx: Optional[str] = None
    pfx_data: Optional[str] = field(default=None, repr=False)
    pfx_password: Optional[str] = field(default=None, repr=False)
    overwrite: bool = False
    listener: Optional[str] = None
    dry_run: bool = False
    timeout_connect: int = 5
    timeout_read: int = 60
    operation_timeout: int = 900
    log: Optional[str] = None
    log_level: str = "standard"
    add: bool = False
    remove: bool = False
    inventory: bool = False
    discover: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """Validate configuration values and resolve the credential."""
        if not self.tenant_id:
            raise ConfigurationError("Tenant ID is required")

        if not self.application_id:
            raise ConfigurationError("Application ID is required")

        if self.client_secret and self.client_cert:
            raise ConfigurationError("Provide either a client secret or a client certificate, not both")

        if not self.client_secret and not self.client_cert:
            raise ConfigurationError("A client secret or a client certificate is required")

        # Raise on unknown names
        AzureCloud.from_name(self.azure_cloud)
        StoreType.from_name(self.store_type)
        if self.resource_id:
            GatewayResourceId.parse(self.resource_id)

        for name in ("timeout_connect", "timeout_read", "operation_timeout"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {value}")

        if self.log_level not in [level.value for level in LogLevel]:
            raise ConfigurationError(
                f"log_level must be one of {[level.value for level in LogLevel]}, got: {self.log_level}")

        # Expand paths
        if self.log:
            self.log = str(Path(self.log).expanduser().resolve())
        if self.client_cert:
            self.client_cert = str(Path(self.client_cert).expanduser().resolve())
        if self.pfx:
            self.pfx = str(Path(self.pfx).expanduser().resolve())

        if self.client_secret:
            self._credential = ClientSecret(self.client_secret)
        else:
            self._credential = ClientCertificate(self.client_cert, self.client_cert_password)

    @property
    def credential(self) -> CredentialKind:
        return self._credential

    @property
    def cloud(self) -> AzureCloud:
        return AzureCloud.from_name(self.azure_cloud)

    @property
    def store(self) -> StoreType:
        return StoreType.from_name(self.store_type)

    @property
    def gateway_id(self) -> Optional[GatewayResourceId]:
        return GatewayResourceId.parse(self.resource_id) if self.resource_id else None

# ---------------------------
# Custom Exceptions
# ---------------------------

class AppGwCertSwapError(Exception):
    """Base exception for AppGwCertSwap errors."""
    pass

class ConfigurationError(AppGwCertSwapError):
    """Configuration validation error."""
    pass

class CertificateError(AppGwCertSwapError):
    """Certificate material could not be read or decoded."""
    pass

class APIError(AppGwCertSwapError):
    """Azure API or transport error."""

    def __init__(self, message: str, http_status: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.http_status = http_status
        self.detail = detail

class PreconditionError(AppGwCertSwapError):
    """The gateway is not in a state that allows the operation."""
    pass

class CertificateExistsError(PreconditionError):
    pass

class CertificateNotFoundError(PreconditionError):
    pass

class CertificateBoundError(PreconditionError):
    pass

class ListenerNotFoundError(PreconditionError):
    pass

class ReplaceIncompleteError(AppGwCertSwapError):
    """A temp-swap stopped after the listener was repointed.

    The listener keeps serving valid material, but the gateway may hold the
    temporary certificate or lack the certificate named after the listener.
    Nothing is rolled back; the attributes describe what to reconcile by hand.
    """

    def __init__(self, listener: str, original_name: str, temp_alias: str, failed_step: str,
                 completed_steps: List[str], serving_certificate: str, cause: Exception):
        self.listener = listener
        self.original_name = original_name
        self.temp_alias = temp_alias
        self.failed_step = failed_step
        self.completed_steps = completed_steps
        self.serving_certificate = serving_certificate
        self.cause = cause
        super().__init__(
            f"Replacement for listener \"{listener}\" stopped at step '{failed_step}': {cause}. "
            f"Listener \"{listener}\" is served by certificate \"{serving_certificate}\"; "
            f"temporary certificate \"{temp_alias}\" may still exist. "
            f"Completed steps: {'; '.join(completed_steps) or 'none'}"
        )

# ---------------------------
# Logging
# ---------------------------

class Logger:
    """File logger with operation tracking and scrubbing of secrets."""

    def __init__(self, path: Optional[str], level: LogLevel):
        self.path = path
        self.level = level
        self.fp = None
        self.operation_id: Optional[str] = None

        if self.path:
            self._open_log_file()

    def _open_log_file(self):
        """Open log file with proper error handling."""
        try:
            log_path = Path(self.path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self.fp = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            print(f"[!] Could not open log file '{self.path}': {e}")
            self.fp = None

    def set_operation_id(self, operation_id: str):
        """Set operation ID for correlation."""
        self.operation_id = operation_id

    def _ts(self) -> str:
        return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _scrub(self, s: Union[str, Dict, Any]) -> str:
        """Scrub sensitive information from log messages."""
        if not isinstance(s, str):
            try:
                s = json.dumps(s, default=str)
            except (TypeError, ValueError):
                s = str(s)

        patterns = [
            # Tokens
            (r"(Bearer\s+)[A-Za-z0-9._\-]+=*", r"\1<REDACTED>"),
            (r"([\"'](?:access_token|client_secret|client_assertion|password)[\"']\s*:\s*[\"']).*?([\"'])",
             r"\1<REDACTED>\2"),
            (r"((?:client_secret|client_assertion)=)[^&\s]+", r"\1<REDACTED>"),
            # PKCS#12 blobs sent to the gateway
            (r"([\"']data[\"']\s*:\s*[\"']).+?([\"'])", r"\1<PKCS12-REDACTED>\2"),
            # Private keys
            (r"-----BEGIN (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----.*?-----END (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----",
             "<PRIVATE-KEY-REDACTED>"),
        ]

        for pattern, replacement in patterns:
            s = re.sub(pattern, replacement, s, flags=re.IGNORECASE | re.DOTALL)

        return s

    def _format_message(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Format log message with operation correlation."""
        timestamp = self._ts()
        op_prefix = f"[{self.operation_id[:8]}] " if self.operation_id else ""

        if self.level == LogLevel.DEBUG and context:
            context_str = f" | context={json.dumps(context, default=str)}"
            formatted_msg = f"{op_prefix}{msg}{context_str}"
        else:
            formatted_msg = f"{op_prefix}{msg}"

        return f"{timestamp} {level.upper()} {self._scrub(formatted_msg)}"

    def _write(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None):
        if not self.fp:
            return

        try:
            line = self._format_message(level, msg, context) + "\n"
            self.fp.write(line)
            self.fp.flush()
        except OSError:
            # A full disk must not abort a half-finished gateway update
            pass

    def _prefix(self) -> str:
        return f"[{self.operation_id[:8]}] " if self.operation_id else ""

    def info(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("info", msg, context)
        if also_stdout:
            print(f"{self._prefix()}{msg}")

    def warn(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("warn", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{msg}")

    def error(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("error", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{msg}", file=sys.stderr)

    def debug(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        if self.level == LogLevel.DEBUG:
            self._write("debug", msg, context)
            if also_stdout:
                print(f"[DEBUG] {self._prefix()}{msg}")

    def close(self):
        """Close log file."""
        if self.fp:
            self.fp.close()
            self.fp = None

# ---------------------------
# Certificate Material
# ---------------------------

def _b64_der(cert: "x509.Certificate") -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")

def new_temp_alias() -> str:
    """Generate a name for a temporary gateway certificate."""
    return str(uuid.uuid4())

class CertificateProcessor:
    """Decode and summarize certificate material."""

    @staticmethod
    def load_pkcs12_file(path: str) -> str:
        """Load a PKCS#12 file and return it base64 encoded."""
        file_path = Path(path)

        if not file_path.exists():
            raise CertificateError(f"File not found: {path}")

        if not file_path.is_file():
            raise CertificateError(f"Path is not a file: {path}")

        try:
            content = file_path.read_bytes()
        except OSError as e:
            raise CertificateError(f"Failed to read file {path}: {e}")

        if not content:
            raise CertificateError(f"File is empty: {path}")

        return base64.b64encode(content).decode("ascii")

    @staticmethod
    def validate_pkcs12(b64_pkcs12: str, password: Optional[str]) -> List[str]:
        """Check that base64 PKCS#12 material opens with the password; return the chain as base64 DER."""
        try:
            raw = base64.b64decode(b64_pkcs12, validate=True)
        except ValueError as e:
            raise CertificateError(f"Certificate material is not valid base64: {e}")

        try:
            key, cert, additional = pkcs12.load_key_and_certificates(
                raw, password.encode("utf-8") if password else None
            )
        except ValueError as e:
            raise CertificateError(f"Could not open PKCS#12 material (wrong password or format?): {e}")

        if cert is None:
            raise CertificateError("PKCS#12 material does not contain a certificate")
        if key is None:
            raise CertificateError("PKCS#12 material does not contain a private key")

        return [_b64_der(cert)] + [_b64_der(extra) for extra in additional or []]

    @staticmethod
    def chain_from_public_cert_data(public_cert_data: str) -> List[str]:
        """Decode gateway publicCertData (base64 PKCS#7) into base64 DER certificates."""
        text = (public_cert_data or "").strip()
        # The SDK serializes this field as a quoted JSON string
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
            text = text[1:-1]

        try:
            certs = pkcs7.load_der_pkcs7_certificates(base64.b64decode(text, validate=True))
        except ValueError as e:
            raise CertificateError(f"Could not decode PKCS#7 public certificate data: {e}")

        if not certs:
            raise CertificateError("PKCS#7 public certificate data contains no certificates")

        return [_b64_der(cert) for cert in certs]

    @staticmethod
    def leaf_from_pkcs12(b64_pkcs12: str) -> str:
        """Extract the certificate from an unprotected base64 PKCS#12 (Key Vault secret) as base64 DER."""
        try:
            _, cert, _ = pkcs12.load_key_and_certificates(base64.b64decode(b64_pkcs12, validate=True), None)
        except ValueError as e:
            raise CertificateError(f"Could not decode PKCS#12 secret: {e}")

        if cert is None:
            raise CertificateError("PKCS#12 secret does not contain a certificate")
        return _b64_der(cert)

    @staticmethod
    def summarize_chain(chain: List[str]) -> str:
        """Generate certificate chain summary."""
        lines = ["[*] Certificate chain summary:"]

        for idx, b64_der in enumerate(chain):
            try:
                cert = x509.load_der_x509_certificate(base64.b64decode(b64_der))
                not_after = cert.not_valid_after_utc
                cn = CertificateProcessor._extract_cn_or_san(cert)

                days_left = (not_after - datetime.datetime.now(datetime.timezone.utc)).days

                if days_left < 0:
                    expiry_info = f"EXPIRED {abs(days_left)} days ago"
                elif days_left == 0:
                    expiry_info = "EXPIRES TODAY"
                elif days_left == 1:
                    expiry_info = "expires tomorrow"
                elif days_left <= 30:
                    expiry_info = f"expires in {days_left} days"
                else:
                    expiry_info = f"expires {not_after.strftime('%Y-%m-%d')} ({days_left} days)"

                tag = "[leaf]" if idx == 0 else f"[ca-{idx}]"
                lines.append(f"    {tag} {cn} - {expiry_info}")
            except ValueError:
                lines.append(f"    [cert-{idx}] <unparsed certificate>")

        return "\n".join(lines)

    @staticmethod
    def _extract_cn_or_san(cert: "x509.Certificate") -> str:
        """Extract CN or first SAN from certificate."""
        for attr in cert.subject:
            if attr.oid == NameOID.COMMON_NAME:
                return attr.value

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            dns_names = san.get_values_for_type(x509.DNSName)
            return dns_names[0] if dns_names else "(no CN/SAN)"
        except x509.ExtensionNotFound:
            return "(no CN/SAN)"

# ---------------------------
# Configuration Management
# ---------------------------

def _required_str(mapping: Dict[str, Any], key: str, source: str) -> str:
    value = mapping.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"Missing required field '{key}' in {source}")
    return value.strip()

def _json_object(value: Any, source: str) -> Dict[str, Any]:
    """Accept a JSON object given inline or as a JSON string; None becomes {}."""
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{source} are not valid JSON: {e}")
    if not isinstance(value, dict):
        raise ConfigurationError(f"{source} must be a JSON object")
    return value

class ConfigManager:
    """Handle configuration loading and validation."""

    @staticmethod
    def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not path:
            return {}

        if yml is None:
            raise ConfigurationError(
                "YAML config requested but PyYAML is not installed.\n"
                "    pip:  pip3 install pyyaml\n"
                "    apt:  sudo apt-get install python3-yaml"
            )

        config_path = Path(path).expanduser().resolve()

        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError("Config file must contain a YAML dictionary")

        return config

    @staticmethod
    def merge_args_with_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> Config:
        """Merge CLI arguments with config file."""
        args_dict = {}
        # The -C/--config parameter is just the filename
        exclude_keys = {"config", "job"}

        for key, value in vars(args).items():
            if key in exclude_keys:
                continue
            if value is not None and value != "" and value is not False:
                args_dict[key] = value

        # Args take precedence
        merged = {**cfg, **args_dict}

        valid_keys = {f for f in Config.__dataclass_fields__}
        unknown_keys = set(merged) - valid_keys
        if unknown_keys:
            print(f"[!] Warning: Unknown config keys ignored: {', '.join(sorted(unknown_keys))}")
            merged = {k: v for k, v in merged.items() if k in valid_keys}

        try:
            return Config(**merged)
        except TypeError as e:
            raise ConfigurationError(f"Configuration error: {e}")

    @staticmethod
    def from_store_details(details: Dict[str, Any], store_type: str, **settings: Any) -> Config:
        """Build a Config from the calling platform's certificate store details.

        ``details`` carries ``ClientMachine`` (tenant ID), ``StorePath``
        (Application Gateway resource ID) and ``Properties``, a JSON object or
        JSON string with ``ServerUsername`` (application ID),
        ``ServerPassword`` (client secret) and optional ``AzureCloud``.
        ``settings`` are further Config fields such as ``dry_run`` or ``log``.
        """
        if not isinstance(details, dict):
            raise ConfigurationError("Certificate store details must be a JSON object")

        properties = _json_object(details.get("Properties"), "Certificate store properties")

        return Config(
            tenant_id=_required_str(details, "ClientMachine", "certificate store details"),
            application_id=_required_str(properties, "ServerUsername", "certificate store properties"),
            client_secret=_required_str(properties, "ServerPassword", "certificate store properties"),
            azure_cloud=properties.get("AzureCloud") or "public",
            resource_id=_required_str(details, "StorePath", "certificate store details"),
            store_type=store_type,
            **settings,
        )

    @staticmethod
    def from_discovery_details(details: Dict[str, Any], **settings: Any) -> Config:
        """Build a Config from a discovery job configuration (``ClientMachine``, ``ServerUsername``,
        ``ServerPassword``, optional ``JobProperties.dirs``)."""
        if not isinstance(details, dict):
            raise ConfigurationError("Discovery job configuration must be a JSON object")

        job_properties = _json_object(details.get("JobProperties"), "Discovery job properties")

        dirs = job_properties.get("dirs")
        return Config(
            tenant_id=_required_str(details, "ClientMachine", "discovery job configuration"),
            application_id=_required_str(details, "ServerUsername", "discovery job configuration"),
            client_secret=_required_str(details, "ServerPassword", "discovery job configuration"),
            azure_cloud=details.get("AzureCloud") or "public",
            dirs=dirs if isinstance(dirs, str) else None,
            **settings,
        )

    @staticmethod
    def load_job_file(path: str) -> Dict[str, Any]:
        """Load a platform job configuration (JSON)."""
        job_path = Path(path).expanduser().resolve()

        if not job_path.exists():
            raise ConfigurationError(f"Job file not found: {path}")

        try:
            job = json.loads(job_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load job file {path}: {e}")

        if not isinstance(job, dict):
            raise ConfigurationError("Job file must contain a JSON object")

        return job

    @staticmethod
    def store_type_from_job(job: Dict[str, Any], default: Optional[str] = None) -> str:
        """Store type named in the job ``Capability`` (e.g. ``CertStores.AppGwBin.Management``)."""
        capability = str(job.get("Capability") or "")
        for store_type in StoreType:
            if f".{store_type.value.lower()}." in f".{capability.lower()}.":
                return store_type.value
        return default or StoreType.AZURE_APP_GW.value

    @staticmethod
    def request_from_job(job: Dict[str, Any]) -> "OperationRequest":
        """Build an OperationRequest from a management job configuration.

        Reads ``OperationType`` (Add or Remove), ``Overwrite``,
        ``JobCertificate`` (``Alias``, ``Contents``, ``PrivateKeyPassword``) and
        the optional ``JobProperties.HTTPListenerName``.
        """
        actions = {"add": Action.ADD, "remove": Action.REMOVE}
        operation_type = str(job.get("OperationType") or "").strip().lower()
        if operation_type not in actions:
            raise ConfigurationError(f"Unsupported OperationType: {job.get('OperationType')}")

        certificate = _json_object(job.get("JobCertificate"), "Job certificate")
        job_properties = _json_object(job.get("JobProperties"), "Job properties")

        listener = job_properties.get("HTTPListenerName")
        return OperationRequest(
            action=actions[operation_type],
            alias=str(certificate.get("Alias") or ""),
            certificate_material=certificate.get("Contents"),
            private_key_password=certificate.get("PrivateKeyPassword"),
            overwrite=bool(job.get("Overwrite")),
            listener_name=listener.strip() if isinstance(listener, str) and listener.strip() else None,
        )

# ---------------------------
# Azure Clients
# ---------------------------

def build_credential(config: Config, tenant_id: Optional[str] = None) -> Any:
    """azure-identity credential for the configured service principal."""
    tenant = tenant_id or config.tenant_id
    credential = config.credential
    authority = config.cloud.authority_host

    if isinstance(credential, ClientSecret):
        return ClientSecretCredential(tenant, config.application_id, credential.secret, authority=authority)

    try:
        return CertificateCredential(
            tenant, config.application_id,
            certificate_path=credential.path,
            password=credential.password,
            authority=authority,
        )
    except (OSError, ValueError) as e:
        raise CertificateError(f"Could not load client certificate {credential.path}: {e}") from e

def _azure_error(action: str, error: "AzureError") -> APIError:
    reason = getattr(error, "message", None) or str(error)
    return APIError(f"{action}: {reason}", http_status=getattr(error, "status_code", None))

class AzureResources:
    """Azure SDK clients for one tenant, sharing one credential."""

    RETRY_TOTAL = 3

    def __init__(self, config: Config, logger: Logger, tenant_id: Optional[str] = None, credential: Any = None):
        self.config = config
        self.logger = logger
        self.tenant_id = tenant_id or config.tenant_id
        self.credential = credential or build_credential(config, self.tenant_id)
        self._network_clients: Dict[str, Any] = {}

    def _transport_options(self) -> Dict[str, Any]:
        return {
            "connection_timeout": self.config.timeout_connect,
            "read_timeout": self.config.timeout_read,
            "retry_total": self.RETRY_TOTAL,
        }

    def _management_options(self) -> Dict[str, Any]:
        return {
            "base_url": self.config.cloud.resource_manager,
            "credential_scopes": [self.config.cloud.resource_manager_scope],
            **self._transport_options(),
        }

    def network(self, subscription_id: str) -> "NetworkManagementClient":
        """Get or create the Network Management client for a subscription."""
        client = self._network_clients.get(subscription_id)
        if client is None:
            self.logger.debug(f"Creating network client for subscription {subscription_id} "
                              f"in tenant {self.tenant_id} ({self.config.cloud.label} cloud)")
            client = NetworkManagementClient(self.credential, subscription_id, **self._management_options())
            self._network_clients[subscription_id] = client
        return client

    def subscriptions(self) -> "SubscriptionClient":
        return SubscriptionClient(self.credential, **self._management_options())

    def secrets(self, vault_url: str) -> "SecretClient":
        return SecretClient(vault_url=vault_url, credential=self.credential, **self._transport_options())

# ---------------------------
# Application Gateway Client
# ---------------------------

@dataclass
class Certificate:
    """SSL certificate object on the gateway.

    ``id`` is the provider-assigned handle that listeners reference.
    ``data`` holds the uploaded material where the client knows it, and
    ``bound_listener`` names a listener using the certificate.
    """
    name: str
    id: Optional[str] = None
    data: Optional[str] = field(default=None, repr=False)
    bound_listener: Optional[str] = None

@dataclass
class InventoryRecord:
    """One inventoried entry: an alias and its chain as base64 DER, leaf first."""
    alias: str
    certificates: List[str]
    private_key_entry: bool = True
    use_chain_level: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alias": self.alias,
            "certificates": list(self.certificates),
            "private_key_entry": self.private_key_entry,
            "use_chain_level": self.use_chain_level,
        }

@dataclass
class InventoryReadResult:
    """Certificates read from the gateway plus messages for the ones that could not be read."""
    records: List[InventoryRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    summary: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        return "\n".join(([self.summary] if self.summary else []) + self.errors)

class AppGatewayClient:
    """Certificate and listener operations on one Application Gateway.

    Every mutation reads the whole gateway, changes it and writes it back
    with ``begin_create_or_update``. Listener bindings are cached between
    mutations only.
    """

    def __init__(self, azure: AzureResources, gateway_id: Optional[GatewayResourceId], logger: Logger,
                 operation_timeout: int = 900):
        self.azure = azure
        self.gateway_id = gateway_id
        self.logger = logger
        self.operation_timeout = operation_timeout
        self._binding_cache: Optional[Dict[str, str]] = None

    def invalidate(self) -> None:
        """Forget cached listener bindings."""
        self._binding_cache = None

    def _require_gateway_id(self) -> GatewayResourceId:
        if self.gateway_id is None:
            raise ConfigurationError("An Application Gateway resource ID is required for this operation")
        return self.gateway_id

    def _application_gateways(self) -> Any:
        return self.azure.network(self._require_gateway_id().subscription_id).application_gateways

    def _get_gateway(self) -> Any:
        gateway_id = self._require_gateway_id()
        try:
            return self._application_gateways().get(gateway_id.resource_group, gateway_id.name)
        except AzureError as e:
            raise _azure_error(f"Failed to read Application Gateway \"{gateway_id.name}\"", e) from e

    def _put_gateway(self, gateway: Any) -> Any:
        gateway_id = self._require_gateway_id()
        self._binding_cache = None

        try:
            poller = self._application_gateways().begin_create_or_update(
                gateway_id.resource_group, gateway_id.name, gateway)
            updated = poller.result(timeout=self.operation_timeout)
        except AzureError as e:
            raise _azure_error(f"Failed to update Application Gateway \"{gateway_id.name}\"", e) from e

        if not poller.done():
            raise APIError(f"Timed out after {self.operation_timeout}s waiting for "
                           f"Application Gateway \"{gateway_id.name}\" to update")
        return updated

    def _gateway_name(self, gateway: Any) -> str:
        return gateway.name or self.gateway_id.name

    @staticmethod
    def _ssl_certificates(gateway: Any) -> List[Any]:
        if gateway.ssl_certificates is None:
            gateway.ssl_certificates = []
        return gateway.ssl_certificates

    @staticmethod
    def _listeners(gateway: Any) -> List[Any]:
        return gateway.http_listeners or []

    @staticmethod
    def _find(items: List[Any], name: str) -> Optional[Any]:
        return next((item for item in items if item.name == name), None)

    @staticmethod
    def _listener_certificate_id(listener: Any) -> Optional[str]:
        return listener.ssl_certificate.id if listener.ssl_certificate is not None else None

    def _listener_using(self, gateway: Any, entry: Any) -> Optional[str]:
        cert_id = (entry.id or "").lower()
        if not cert_id:
            return None
        for listener in self._listeners(gateway):
            if (self._listener_certificate_id(listener) or "").lower() == cert_id:
                return listener.name
        return None

    def _to_certificate(self, gateway: Any, entry: Any) -> Certificate:
        return Certificate(name=entry.name, id=entry.id, bound_listener=self._listener_using(gateway, entry))

    def create_certificate(self, name: str, b64_material: str, password: str) -> Certificate:
        """Upload a PKCS#12 certificate under a new name."""
        gateway = self._get_gateway()
        gateway_name = self._gateway_name(gateway)
        certificates = self._ssl_certificates(gateway)

        if self._find(certificates, name) is not None:
            raise CertificateExistsError(
                f"Certificate \"{name}\" already exists in Application Gateway \"{gateway_name}\"")

        self.logger.debug(f"Adding SSL certificate \"{name}\" to Application Gateway \"{gateway_name}\"")
        certificates.append(ApplicationGatewaySslCertificate(name=name, data=b64_material, password=password))

        updated = self._put_gateway(gateway)
        entry = self._find(self._ssl_certificates(updated), name)
        if entry is None:
            raise APIError(f"Certificate \"{name}\" is missing from Application Gateway \"{gateway_name}\" after update")

        self.logger.info(f"Added SSL certificate \"{name}\" to Application Gateway \"{gateway_name}\"")
        certificate = self._to_certificate(updated, entry)
        certificate.data = b64_material
        return certificate

    def remove_certificate(self, name: str) -> None:
        """Delete a certificate that no listener uses."""
        gateway = self._get_gateway()
        gateway_name = self._gateway_name(gateway)
        certificates = self._ssl_certificates(gateway)

        entry = self._find(certificates, name)
        if entry is None:
            raise CertificateNotFoundError(
                f"Certificate \"{name}\" not found in Application Gateway \"{gateway_name}\"")

        listener = self._listener_using(gateway, entry)
        if listener:
            raise CertificateBoundError(
                f"Certificate \"{name}\" is in use by listener \"{listener}\" and cannot be removed")

        self.logger.debug(f"Removing SSL certificate \"{name}\" from Application Gateway \"{gateway_name}\"")
        certificates.remove(entry)
        self._put_gateway(gateway)
        self.logger.info(f"Removed SSL certificate \"{name}\" from Application Gateway \"{gateway_name}\"")

    def get_certificate_by_name(self, name: str) -> Certificate:
        gateway = self._get_gateway()
        entry = self._find(self._ssl_certificates(gateway), name)
        if entry is None:
            raise CertificateNotFoundError(
                f"Certificate \"{name}\" not found in Application Gateway \"{self._gateway_name(gateway)}\"")
        return self._to_certificate(gateway, entry)

    def certificate_exists(self, name: str) -> bool:
        return self._find(self._ssl_certificates(self._get_gateway()), name) is not None

    def certificate_is_bound_to_listener(self, name: str) -> bool:
        gateway = self._get_gateway()
        entry = self._find(self._ssl_certificates(gateway), name)
        if entry is None:
            return False
        listener = self._listener_using(gateway, entry)
        self.logger.debug(f"Certificate \"{name}\" is {'bound to listener ' + listener if listener else 'not bound'}")
        return listener is not None

    def listener_exists(self, name: str) -> bool:
        return self._find(self._listeners(self._get_gateway()), name) is not None

    def bind_certificate_to_listener(self, certificate: Certificate, listener_name: str) -> None:
        """Point an HTTPS listener at a certificate."""
        gateway = self._get_gateway()
        gateway_name = self._gateway_name(gateway)

        entry = self._find(self._ssl_certificates(gateway), certificate.name)
        if entry is None:
            raise CertificateNotFoundError(
                f"Certificate \"{certificate.name}\" does not exist in Application Gateway \"{gateway_name}\"")

        listener = self._find(self._listeners(gateway), listener_name)
        if listener is None:
            raise ListenerNotFoundError(
                f"Listener \"{listener_name}\" does not exist in Application Gateway \"{gateway_name}\"")

        cert_id = entry.id or certificate.id
        if not cert_id:
            raise APIError(f"Certificate \"{certificate.name}\" has no resource ID to bind")

        self.logger.debug(f"Updating listener \"{listener_name}\" to use certificate \"{certificate.name}\"")
        listener.ssl_certificate = SubResource(id=cert_id)
        self._put_gateway(gateway)
        self.logger.info(f"Listener \"{listener_name}\" now uses certificate \"{certificate.name}\"")

    def get_bound_listener_certificates(self) -> Dict[str, str]:
        """Return {listener name: certificate name} for listeners with a bound certificate."""
        if self._binding_cache is not None:
            self.logger.debug("Returning cached listener certificate bindings")
            return dict(self._binding_cache)

        gateway = self._get_gateway()
        names_by_id = {
            entry.id.lower(): entry.name
            for entry in self._ssl_certificates(gateway) if entry.id
        }

        bindings: Dict[str, str] = {}
        for listener in self._listeners(gateway):
            cert_id = (self._listener_certificate_id(listener) or "").lower()
            if cert_id in names_by_id:
                bindings[listener.name] = names_by_id[cert_id]
                self.logger.debug(f"Listener \"{listener.name}\" is bound to certificate \"{names_by_id[cert_id]}\"")

        self._binding_cache = bindings
        return dict(bindings)

    def list_certificates_with_inventory_data(self) -> InventoryReadResult:
        """Read every gateway certificate's chain; unreadable ones become error messages."""
        gateway = self._get_gateway()
        entries = self._ssl_certificates(gateway)
        self.logger.debug(f"There are {len(entries)} certificates in Application Gateway \"{self._gateway_name(gateway)}\"")

        result = InventoryReadResult()
        for entry in entries:
            try:
                if entry.public_cert_data:
                    chain = CertificateProcessor.chain_from_public_cert_data(entry.public_cert_data)
                elif entry.key_vault_secret_id:
                    self.logger.debug(f"Certificate \"{entry.name}\" has no public data; "
                                      f"reading Key Vault secret {entry.key_vault_secret_id}")
                    chain = [self._certificate_from_key_vault(entry.key_vault_secret_id)]
                else:
                    message = (f"Certificate \"{entry.name}\" ({entry.id}) does not have any public "
                               f"certificate data or Key Vault secret ID.")
                    self.logger.error(message)
                    result.errors.append(message)
                    continue
            except (CertificateError, APIError) as e:
                message = f"Failed to read certificate \"{entry.name}\" ({entry.id}): {e}"
                self.logger.error(message)
                result.errors.append(message)
                continue

            result.records.append(InventoryRecord(alias=entry.name, certificates=chain))

        if result.errors:
            result.summary = (
                f"Application Gateway certificate inventory may be incomplete. Successfully read "
                f"{len(result.records)}/{len(entries)} certificates present in the Application Gateway called "
                f"{self.gateway_id.name} ({self.gateway_id}). Error summary:"
            )

        self.logger.debug(f"Read {len(result.records)} certificates from Application Gateway")
        return result

    def _certificate_from_key_vault(self, secret_id: str) -> str:
        """Fetch a Key Vault PKCS#12 secret and return its certificate as base64 DER."""
        parsed = urlparse(secret_id)
        segments = [segment for segment in parsed.path.split("/") if segment]

        # https://<vault>.vault.azure.net/secrets/<name>[/<version>]
        if parsed.scheme != "https" or not parsed.netloc or len(segments) not in (2, 3) or segments[0] != "secrets":
            raise CertificateError(f"Invalid Azure Key Vault secret ID: {secret_id}")

        name = segments[1]
        version = segments[2] if len(segments) == 3 else None

        try:
            secret = self.azure.secrets(f"https://{parsed.netloc}").get_secret(name, version)
        except AzureError as e:
            raise _azure_error(f"Failed to read Key Vault secret {name}", e) from e

        content_type = secret.properties.content_type
        if content_type != PKCS12_CONTENT_TYPE:
            raise CertificateError(
                f"Unexpected content type for secret {name}. Expected {PKCS12_CONTENT_TYPE}, got {content_type}")

        return CertificateProcessor.leaf_from_pkcs12(secret.value or "")

    def discover_gateways(self) -> List[str]:
        """List the resource IDs of every Application Gateway the principal can see."""
        gateway_ids: List[str] = []

        try:
            for subscription in self.azure.subscriptions().subscriptions.list():
                subscription_id = subscription.subscription_id
                display_name = subscription.display_name or subscription_id
                self.logger.debug(f"Searching for Application Gateways in subscription \"{display_name}\"")

                gateways = self.azure.network(subscription_id).application_gateways.list_all()
                found = [gateway.id for gateway in gateways if gateway.id]
                self.logger.debug(f"Found {len(found)} Application Gateways in subscription \"{display_name}\"")
                gateway_ids.extend(found)
        except AzureError as e:
            raise _azure_error(f"Failed to discover Application Gateways in tenant {self.azure.tenant_id}", e) from e

        self.logger.debug(f"Discovered {len(gateway_ids)} Application Gateways")
        return gateway_ids

def build_gateway_client(config: Config, logger: Logger, tenant_id: Optional[str] = None) -> AppGatewayClient:
    """Wire credential, SDK clients and gateway client for a configuration (optionally another tenant)."""
    azure = AzureResources(config, logger, tenant_id=tenant_id)
    return AppGatewayClient(azure, config.gateway_id, logger, config.operation_timeout)

# ---------------------------
# Operation Planner
# ---------------------------

class Action(Enum):
    """Requested action."""
    ADD = "add"
    REMOVE = "remove"

class Operation(Enum):
    """Planned operation."""
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"
    DO_NOTHING = "do_nothing"

@dataclass
class OperationRequest:
    """A management request from the calling platform.

    ``listener_name`` is only used by the certificate binding policy, where
    it names a listener to bind the new certificate to.
    """
    action: Action
    alias: str
    certificate_material: Optional[str] = field(default=None, repr=False)
    private_key_password: Optional[str] = field(default=None, repr=False)
    overwrite: bool = False
    listener_name: Optional[str] = None

class OperationPlanner:
    """Choose Add, Replace, Remove or DoNothing for a request."""

    def __init__(self, client: Any, policy: BindingPolicy, logger: Logger):
        self.client = client
        self.policy = policy
        self.logger = logger

    def validate(self, request: OperationRequest) -> None:
        """Reject malformed requests before any remote call."""
        if not request.alias or not request.alias.strip():
            raise ConfigurationError("Certificate alias is required.")

        if self.policy is BindingPolicy.LISTENER and request.action is Action.REMOVE:
            raise ConfigurationError("Remove is not supported for listener binding stores.")

        if request.action is Action.ADD:
            if not request.private_key_password or not request.private_key_password.strip():
                raise ConfigurationError("Certificate must be in PKCS#12 format - no private key password provided.")
            if not request.certificate_material:
                raise ConfigurationError("Certificate contents are required to add a certificate.")

    def plan(self, request: OperationRequest) -> Operation:
        self.validate(request)

        if self.policy is BindingPolicy.CERTIFICATE:
            operation = self._plan_by_certificate(request)
        else:
            operation = self._plan_by_listener(request)

        self.logger.info(f"Planned {operation.name} for alias \"{request.alias}\" ({self.policy.value} binding policy)")
        return operation

    def _plan_by_certificate(self, request: OperationRequest) -> Operation:
        if request.action is Action.REMOVE:
            return Operation.REMOVE

        if request.overwrite and self.client.certificate_is_bound_to_listener(request.alias):
            # A renewal through the listener binding store already rebinds this certificate
            self.logger.info(f"Certificate \"{request.alias}\" is bound to an HTTPS listener; "
                             f"leaving the renewal to the listener binding store")
            return Operation.DO_NOTHING

        if request.overwrite:
            return Operation.REPLACE

        return Operation.ADD

    def _plan_by_listener(self, request: OperationRequest) -> Operation:
        listener = request.alias

        if not self.client.listener_exists(listener):
            raise ListenerNotFoundError(f"HTTPS listener \"{listener}\" does not exist on the Application Gateway")

        bound = self.client.get_bound_listener_certificates().get(listener)
        if bound == listener:
            return Operation.REPLACE

        if bound:
            self.logger.info(f"Listener \"{listener}\" uses certificate \"{bound}\"; "
                             f"a certificate named \"{listener}\" will be bound instead")
        return Operation.ADD

# ---------------------------
# Certificate Lifecycle Executor
# ---------------------------

@dataclass
class ExecutionReport:
    """Steps performed for one operation."""
    operation: Operation
    alias: str
    steps: List[str] = field(default_factory=list)
    temp_alias: Optional[str] = None

class CertificateLifecycleExecutor:
    """Carry out a planned operation as an ordered series of gateway calls.

    Each call completes before the next one starts. The only automatic
    rollback is deleting a certificate this executor just created when the
    listener binding that should follow it fails.
    """

    MAX_TEMP_ALIAS_ATTEMPTS = 5

    def __init__(self, client: Any, policy: BindingPolicy, logger: Logger):
        self.client = client
        self.policy = policy
        self.logger = logger

    def execute(self, operation: Operation, request: OperationRequest) -> ExecutionReport:
        report = ExecutionReport(operation=operation, alias=request.alias)

        if operation is Operation.DO_NOTHING:
            self.logger.info(f"No action taken for \"{request.alias}\"")
            return report

        handlers = {
            (BindingPolicy.CERTIFICATE, Operation.ADD): self._add,
            (BindingPolicy.CERTIFICATE, Operation.REPLACE): self._replace,
            (BindingPolicy.CERTIFICATE, Operation.REMOVE): self._remove,
            (BindingPolicy.LISTENER, Operation.ADD): self._add_and_bind,
            (BindingPolicy.LISTENER, Operation.REPLACE): self._replace_and_rebind,
        }

        handler = handlers.get((self.policy, operation))
        if handler is None:
            raise ConfigurationError(f"{operation.name} is not supported by the {self.policy.value} binding policy")

        handler(request, report)
        self.logger.info(f"{operation.name} for \"{request.alias}\" complete: {'; '.join(report.steps)}")
        return report

    def _bind_or_discard(self, certificate: Certificate, listener_name: str, report: ExecutionReport) -> None:
        """Bind a certificate created by this operation; delete it again if the bind fails."""
        try:
            self.client.bind_certificate_to_listener(certificate, listener_name)
        except AppGwCertSwapError as e:
            self.logger.warn(f"Failed to bind certificate \"{certificate.name}\" to listener \"{listener_name}\": {e}. "
                             f"Removing the certificate from the gateway.")
            try:
                self.client.remove_certificate(certificate.name)
            except AppGwCertSwapError as cleanup_error:
                raise APIError(
                    f"Binding certificate \"{certificate.name}\" to listener \"{listener_name}\" failed ({e}) "
                    f"and the certificate could not be removed afterwards: {cleanup_error}"
                ) from e
            report.steps.append(f"removed {certificate.name} after failed bind")
            raise

        report.steps.append(f"bound {certificate.name} to {listener_name}")

    def _add(self, request: OperationRequest, report: ExecutionReport) -> None:
        # Duplicate names are rejected by the gateway client
        certificate = self.client.create_certificate(
            request.alias, request.certificate_material, request.private_key_password)
        report.steps.append(f"created {request.alias}")

        if request.listener_name:
            self.logger.debug(f"Binding \"{request.alias}\" to listener \"{request.listener_name}\"")
            self._bind_or_discard(certificate, request.listener_name, report)

    def _replace(self, request: OperationRequest, report: ExecutionReport) -> None:
        # Only reached when nothing is bound to the alias, so removing first is safe
        if self.client.certificate_exists(request.alias):
            self.client.remove_certificate(request.alias)
            report.steps.append(f"removed {request.alias}")
        else:
            self.logger.debug(f"Certificate \"{request.alias}\" does not exist yet; adding it")

        self._add(request, report)

    def _remove(self, request: OperationRequest, report: ExecutionReport) -> None:
        certificate = self.client.get_certificate_by_name(request.alias)

        if certificate.bound_listener:
            raise CertificateBoundError(
                f"Certificate \"{certificate.name}\" is bound to listener \"{certificate.bound_listener}\" "
                f"and cannot be removed")

        self.client.remove_certificate(certificate.name)
        report.steps.append(f"removed {certificate.name}")

    def _add_and_bind(self, request: OperationRequest, report: ExecutionReport) -> None:
        alias = request.alias

        if not self.client.certificate_exists(alias):
            certificate = self.client.create_certificate(
                alias, request.certificate_material, request.private_key_password)
            report.steps.append(f"created {alias}")
            self._bind_or_discard(certificate, alias, report)
            return

        self.logger.debug(f"Certificate \"{alias}\" already exists; binding it to listener \"{alias}\"")
        certificate = self.client.get_certificate_by_name(alias)
        self.client.bind_certificate_to_listener(certificate, alias)
        report.steps.append(f"bound {alias} to {alias}")

    def _new_temp_alias(self) -> str:
        for _ in range(self.MAX_TEMP_ALIAS_ATTEMPTS):
            candidate = new_temp_alias()
            if not self.client.certificate_exists(candidate):
                return candidate
        raise PreconditionError("Could not generate an unused temporary certificate name")

    def _replace_and_rebind(self, request: OperationRequest, report: ExecutionReport) -> None:
        """Temp-swap: the listener always has a bound certificate while the named one is recreated.

        1. record the certificate bound to the listener
        2. create a temporary certificate with the new material
        3. bind it to the listener (the listener now serves the new material)
        4. remove the original certificate
        5. recreate the certificate named after the listener
        6. bind it to the listener
        7. remove the temporary certificate
        """
        listener = request.alias
        material = request.certificate_material
        password = request.private_key_password

        original_name = self.client.get_bound_listener_certificates().get(listener)
        if original_name is None:
            raise ListenerNotFoundError(f"HTTPS listener \"{listener}\" has no bound certificate on the Application Gateway")

        temp_alias = self._new_temp_alias()
        report.temp_alias = temp_alias

        self.logger.debug(f"Creating temporary certificate \"{temp_alias}\"")
        temp_certificate = self.client.create_certificate(temp_alias, material, password)
        report.steps.append(f"created {temp_alias}")

        self._bind_or_discard(temp_certificate, listener, report)
        serving = temp_alias

        step = f"remove {original_name}"
        try:
            self.client.remove_certificate(original_name)
            report.steps.append(f"removed {original_name}")

            step = f"create {listener}"
            certificate = self.client.create_certificate(listener, material, password)
            report.steps.append(f"created {listener}")

            step = f"bind {listener} to {listener}"
            self.client.bind_certificate_to_listener(certificate, listener)
            serving = listener
            report.steps.append(f"bound {listener} to {listener}")

            step = f"remove {temp_alias}"
            self.client.remove_certificate(temp_alias)
            report.steps.append(f"removed {temp_alias}")
        except AppGwCertSwapError as e:
            self.logger.error(f"Replacement for listener \"{listener}\" failed at '{step}': {e}")
            raise ReplaceIncompleteError(
                listener=listener,
                original_name=original_name,
                temp_alias=temp_alias,
                failed_step=step,
                completed_steps=list(report.steps),
                serving_certificate=serving,
                cause=e,
            ) from e

# ---------------------------
# Inventory Reconciler
# ---------------------------

@dataclass
class InventoryResult:
    """Inventory records and warnings for certificates that could not be read."""
    records: List[InventoryRecord]
    warnings: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

class InventoryReconciler:
    """Build the certificate view or the per-listener view of a gateway."""

    def __init__(self, client: Any, logger: Logger):
        self.client = client
        self.logger = logger

    def _read(self) -> InventoryReadResult:
        read = self.client.list_certificates_with_inventory_data()
        if not read.success:
            self.logger.warn(read.message)
        return read

    def inventory_certificates(self) -> InventoryResult:
        """One record per readable certificate, aliased by certificate name."""
        read = self._read()
        return InventoryResult(records=list(read.records), warnings=[] if read.success else [read.message])

    def reconcile(self) -> InventoryResult:
        """One record per bound listener, aliased by listener name.

        A certificate bound to two listeners is reported twice; an unbound
        certificate is not reported.
        """
        read = self._read()
        bindings = self.client.get_bound_listener_certificates()
        self.logger.debug(f"{len(bindings)} HTTPS listeners have bound certificates")

        by_name = {record.alias: record for record in read.records}

        records = []
        for listener_name, certificate_name in bindings.items():
            record = by_name.get(certificate_name)
            if record is None:
                self.logger.debug(f"Listener \"{listener_name}\" uses certificate \"{certificate_name}\", "
                                  f"which could not be read")
                continue
            records.append(replace(record, alias=listener_name, certificates=list(record.certificates),
                                   use_chain_level=False))

        self.logger.info(f"Of {len(read.records)} readable certificates, {len(records)} listener bindings reported")
        return InventoryResult(records=records, warnings=[] if read.success else [read.message])

# ---------------------------
# Jobs
# ---------------------------

class JobStatus(Enum):
    SUCCESS = "Success"
    WARNING = "Warning"
    FAILURE = "Failure"

@dataclass
class JobResult:
    """Outcome reported to the calling platform."""
    status: JobStatus
    message: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "message": self.message, **self.detail}

    @property
    def exit_code(self) -> int:
        """0 for Success or Warning, 1 for configuration or certificate failures, 2 otherwise."""
        if self.status is not JobStatus.FAILURE:
            return 0
        return 1 if self.detail.get("error") in ("configuration", "certificate") else 2

def error_kind(error: AppGwCertSwapError) -> str:
    """Classify a failure: configuration, certificate, precondition or remote."""
    if isinstance(error, ConfigurationError):
        return "configuration"
    if isinstance(error, CertificateError):
        return "certificate"
    if isinstance(error, PreconditionError):
        return "precondition"
    return "remote"

class _GatewayJob:
    """Shared client handling; a client passed in is used instead of one built from config."""

    def __init__(self, config: Config, logger: Logger, client: Any = None):
        self.config = config
        self.logger = logger
        self.client = client

    def _get_client(self) -> Any:
        if self.client is None:
            self.client = build_gateway_client(self.config, self.logger)
        return self.client

class ManagementJob(_GatewayJob):
    """Add or remove a certificate according to the store type's binding policy."""

    def process(self, request: OperationRequest) -> JobResult:
        policy = self.config.store.binding_policy
        self.logger.info(f"Beginning {self.config.store.value} management job: "
                         f"{request.action.value} \"{request.alias}\"")

        try:
            client = self._get_client()
            client.invalidate()
            operation = OperationPlanner(client, policy, self.logger).plan(request)

            if self.config.dry_run:
                message = f"DRYRUN: would {operation.value} \"{request.alias}\""
                self.logger.info(message)
                return JobResult(JobStatus.SUCCESS, message, {"operation": operation.value, "dry_run": True})

            report = CertificateLifecycleExecutor(client, policy, self.logger).execute(operation, request)
        except ReplaceIncompleteError as e:
            self.logger.error(f"Error processing management job: {e}")
            return JobResult(JobStatus.FAILURE, str(e), {
                "operation": Operation.REPLACE.value,
                "error": error_kind(e),
                "listener": e.listener,
                "original_certificate": e.original_name,
                "temporary_certificate": e.temp_alias,
                "serving_certificate": e.serving_certificate,
                "failed_step": e.failed_step,
                "completed_steps": e.completed_steps,
            })
        except AppGwCertSwapError as e:
            self.logger.error(f"Error processing management job: {e}")
            return JobResult(JobStatus.FAILURE, str(e), {"error": error_kind(e)})

        return JobResult(
            JobStatus.SUCCESS,
            f"{report.operation.value} \"{request.alias}\" complete",
            {"operation": report.operation.value, "steps": report.steps},
        )

class InventoryJob(_GatewayJob):
    """Report gateway certificates (AzureAppGW) or listener bindings (AppGwBin) to a sink."""

    def process(self, sink: Callable[[List[InventoryRecord]], Any]) -> JobResult:
        self.logger.info(f"Beginning {self.config.store.value} inventory job")

        try:
            client = self._get_client()
            client.invalidate()
            reconciler = InventoryReconciler(client, self.logger)
            if self.config.store.binding_policy is BindingPolicy.LISTENER:
                result = reconciler.reconcile()
            else:
                result = reconciler.inventory_certificates()
        except AppGwCertSwapError as e:
            message = f"Error getting Application Gateway SSL certificates:\n{e}"
            self.logger.error(message)
            return JobResult(JobStatus.FAILURE, message, {"error": error_kind(e)})

        try:
            sink(result.records)
        except Exception as e:
            self.logger.error(f"Inventory submission failed: {e}")
            return JobResult(JobStatus.FAILURE, f"Inventory submission failed: {e}")

        count = {"count": len(result.records)}
        if result.partial:
            return JobResult(JobStatus.WARNING, "\n".join(result.warnings), count)
        return JobResult(JobStatus.SUCCESS, f"Inventoried {len(result.records)} entries", count)

class DiscoveryJob(_GatewayJob):
    """Find Application Gateways in one or more tenants."""

    def __init__(self, config: Config, logger: Logger, client: Any = None,
                 client_factory: Optional[Callable[..., Any]] = None):
        super().__init__(config, logger, client)
        self.client_factory = client_factory or build_gateway_client

    def tenants(self) -> List[str]:
        """Tenants from the comma separated ``dirs`` value; empty or ``*`` means the configured tenant."""
        dirs = (self.config.dirs or "").strip()
        if not dirs or dirs == "*":
            return [self.config.tenant_id]
        return [tenant.strip() for tenant in dirs.split(",") if tenant.strip()]

    def process(self, sink: Callable[[List[str]], Any]) -> JobResult:
        self.logger.info("Beginning Application Gateway discovery job")
        discovered: List[str] = []

        for tenant_id in self.tenants():
            self.logger.debug(f"Processing tenant {tenant_id}")
            client = self.client or self.client_factory(self.config, self.logger, tenant_id=tenant_id)
            try:
                for gateway_id in client.discover_gateways():
                    if gateway_id not in discovered:
                        discovered.append(gateway_id)
            except AppGwCertSwapError as e:
                message = f"Error discovering Application Gateways in tenant {tenant_id}: {e}"
                self.logger.error(message)
                return JobResult(JobStatus.FAILURE, message, {"error": error_kind(e)})

        try:
            sink(discovered)
        except Exception as e:
            self.logger.error(f"Discovery submission failed: {e}")
            return JobResult(JobStatus.FAILURE, f"Discovery submission failed: {e}")

        return JobResult(JobStatus.SUCCESS, f"Discovered {len(discovered)} Application Gateways",
                         {"count": len(discovered)})

# ---------------------------
# Main Application
# ---------------------------

class AppGwCertSwap:
    """Main application class."""

    def __init__(self):
        self.logger: Optional[Logger] = None
        self.config: Optional[Config] = None
        self.parser = self.build_parser()

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Add, replace, remove and inventory Azure Application Gateway certificates "
                        "and keep HTTPS listeners bound to them.",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        # Connection settings
        parser.add_argument("--tenant-id", dest="tenant_id", help="Azure AD tenant ID")
        parser.add_argument("--application-id", dest="application_id", help="Service principal application ID")
        parser.add_argument("--client-secret", dest="client_secret", help="Service principal client secret")
        parser.add_argument("--client-cert", dest="client_cert",
                            help="Service principal certificate (PEM with key, or PKCS#12)")
        parser.add_argument("--client-cert-password", dest="client_cert_password",
                            help="Password for --client-cert")
        parser.add_argument("--azure-cloud", dest="azure_cloud",
                            choices=[cloud.label for cloud in AzureCloud], help="Azure cloud (default: public)")
        parser.add_argument("--resource-id", dest="resource_id", help="Application Gateway resource ID")
        parser.add_argument("--store-type", dest="store_type", choices=[s.value for s in StoreType],
                            help="AzureAppGW: alias names the certificate; AppGwBin: alias names the HTTPS listener")

        # Certificate settings
        parser.add_argument("--alias", help="Certificate alias (certificate or listener name, per store type)")
        parser.add_argument("--pfx", help="PKCS#12 file to upload")
        parser.add_argument("--pfx-data", dest="pfx_data", help="Base64 PKCS#12 to upload")
        parser.add_argument("--pfx-password", dest="pfx_password", help="PKCS#12 password")
        parser.add_argument("--listener", help="AzureAppGW only: HTTPS listener to bind the new certificate to")
        parser.add_argument("--overwrite", action="store_true", help="Replace an existing certificate")
        parser.add_argument("--dirs", help="Discovery: comma separated tenant IDs, or * for --tenant-id")

        # Behavior settings
        parser.add_argument("--dry-run", dest="dry_run", action="store_true",
                            help="Plan the operation without changing the gateway")

        # Timeout settings
        parser.add_argument("--timeout-connect", dest="timeout_connect", type=int)
        parser.add_argument("--timeout-read", dest="timeout_read", type=int)
        parser.add_argument("--operation-timeout", dest="operation_timeout", type=int,
                            help="Seconds to wait for a gateway update to finish")

        # Configuration
        parser.add_argument("-C", "--config", help="YAML config file")
        parser.add_argument("--job", help="Platform job file (JSON) with certificate store details; "
                                          "management, inventory or discovery is chosen from its contents")

        # Operation modes
        mode_group = parser.add_mutually_exclusive_group()
        mode_group.add_argument("--add", action="store_true", help="Add or renew the certificate --alias")
        mode_group.add_argument("--remove", action="store_true", help="Remove the certificate --alias (AzureAppGW)")
        mode_group.add_argument("--inventory", action="store_true", help="List certificates or listener bindings")
        mode_group.add_argument("--discover", action="store_true", help="Discover Application Gateways")

        # Logging
        parser.add_argument("--log", help="Write a plain log to this file")
        parser.add_argument("--log-level", dest="log_level", choices=["standard", "debug"],
                            help="Log verbosity when --log is used (default: standard)")

        return parser

    def parse_arguments(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments."""
        return self.parser.parse_args(argv)

    def setup_logging(self, config: Config):
        log_level = LogLevel.DEBUG if config.log_level == "debug" else LogLevel.STANDARD
        self.logger = Logger(config.log, log_level)
        self.logger.set_operation_id(str(uuid.uuid4()))

    def print_effective_config(self, config: Config):
        credential = "client secret" if isinstance(config.credential, ClientSecret) else "client certificate"
        print("[*] Effective configuration:")
        print(f"    tenant_id: {config.tenant_id}")
        print(f"    application_id: {config.application_id}")
        print(f"    credential: {credential}")
        print(f"    azure_cloud: {config.cloud.label}")
        print(f"    store_type: {config.store.value}")
        if config.resource_id:
            print(f"    resource_id: {config.resource_id}")
        print(f"    dry_run: {config.dry_run}")
        print(f"    timeouts: connect={config.timeout_connect}s read={config.timeout_read}s "
              f"operation={config.operation_timeout}s")
        if config.log:
            print(f"    log: {config.log}")
            print(f"    log_level: {config.log_level}")

    def _validate_mode(self, config: Config) -> str:
        modes = [mode for mode in ("add", "remove", "inventory", "discover") if getattr(config, mode)]
        if len(modes) != 1:
            raise ConfigurationError("Exactly one of --add, --remove, --inventory or --discover is required.")
        mode = modes[0]

        if mode in ("add", "remove", "inventory") and not config.resource_id:
            raise ConfigurationError(f"resource_id is required for --{mode}.")

        if mode in ("add", "remove") and not config.alias:
            raise ConfigurationError(f"alias is required for --{mode}.")

        if mode == "add" and not (config.pfx or config.pfx_data):
            raise ConfigurationError("pfx or pfx_data is required for --add.")

        if mode == "add" and config.pfx and config.pfx_data:
            raise ConfigurationError("Use either pfx or pfx_data, not both.")

        return mode

    def config_from_job(self, job: Dict[str, Any], args: argparse.Namespace) -> Tuple[str, Config]:
        """Build the Config for a platform job and name its mode.

        A job with ``OperationType`` is a management job, one with only
        ``CertificateStoreDetails`` is an inventory job, anything else is a
        discovery job. Logging, timeout and dry-run settings come from the
        command line.
        """
        settings: Dict[str, Any] = {
            name: getattr(args, name)
            for name in ("log", "log_level", "timeout_connect", "timeout_read", "operation_timeout")
            if getattr(args, name) is not None
        }
        settings["dry_run"] = bool(args.dry_run)

        if job.get("OperationType"):
            mode = ConfigManager.request_from_job(job).action.value
        elif job.get("CertificateStoreDetails") is not None:
            mode = "inventory"
        else:
            return "discover", ConfigManager.from_discovery_details(job, **settings)

        store_type = ConfigManager.store_type_from_job(job, args.store_type)
        return mode, ConfigManager.from_store_details(job.get("CertificateStoreDetails"), store_type, **settings)

    def run_management_mode(self, config: Config, action: Action) -> JobResult:
        """Run an add or remove job."""
        material = None
        if action is Action.ADD:
            material = CertificateProcessor.load_pkcs12_file(config.pfx) if config.pfx else config.pfx_data
            if config.pfx_password:
                chain = CertificateProcessor.validate_pkcs12(material, config.pfx_password)
                print(CertificateProcessor.summarize_chain(chain))

        print(f"[*] {action.value.capitalize()} \"{config.alias}\" on {config.gateway_id.name} ({config.store.value})")

        request = OperationRequest(
            action=action,
            alias=config.alias,
            certificate_material=material,
            private_key_password=config.pfx_password,
            overwrite=config.overwrite,
            listener_name=config.listener,
        )
        return ManagementJob(config, self.logger).process(request)

    def run_inventory_mode(self, config: Config) -> JobResult:
        """Run an inventory job and attach the records to the result."""
        collected: List[InventoryRecord] = []
        result = InventoryJob(config, self.logger).process(collected.extend)

        if collected:
            result.detail["inventory"] = [
                {**record.to_dict(), "summary": CertificateProcessor.summarize_chain(record.certificates).splitlines()[1:]}
                for record in collected
            ]
        return result

    def run_discovery_mode(self, config: Config) -> JobResult:
        """Run a discovery job and attach the gateway IDs to the result."""
        collected: List[str] = []
        result = DiscoveryJob(config, self.logger).process(collected.extend)
        if result.status is not JobStatus.FAILURE:
            result.detail["gateways"] = collected
        return result

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main application entry point."""
        try:
            args = self.parse_arguments(argv)

            modes = (args.add, args.remove, args.inventory, args.discover)
            if not args.config and not args.job and not any(modes):
                self.parser.print_help()
                return 0

            job: Optional[Dict[str, Any]] = None
            if args.job:
                if any(modes):
                    raise ConfigurationError("Use either --job or an operation mode, not both.")
                job = ConfigManager.load_job_file(args.job)
                mode, self.config = self.config_from_job(job, args)
                self.setup_logging(self.config)
            else:
                yaml_config = ConfigManager.load_yaml_config(args.config)
                self.config = ConfigManager.merge_args_with_config(args, yaml_config)
                self.setup_logging(self.config)
                mode = self._validate_mode(self.config)

            self.print_effective_config(self.config)

            if job is not None and mode in ("add", "remove"):
                result = ManagementJob(self.config, self.logger).process(ConfigManager.request_from_job(job))
            elif mode == "add":
                result = self.run_management_mode(self.config, Action.ADD)
            elif mode == "remove":
                result = self.run_management_mode(self.config, Action.REMOVE)
            elif mode == "inventory":
                result = self.run_inventory_mode(self.config)
            else:
                result = self.run_discovery_mode(self.config)

            output = {**result.to_dict(), "mode": mode, "version": VERSION}
            print(json.dumps(output, indent=2))

            if result.status is JobStatus.SUCCESS:
                self.logger.info("Certificate operation completed successfully")
            elif result.status is JobStatus.WARNING:
                self.logger.warn(f"Certificate operation completed with warnings: {result.message}", also_stdout=True)
            else:
                self.logger.error(f"Certificate operation failed: {result.message}", also_stdout=True)

            return result.exit_code

        except ConfigurationError as e:
            print(f"[!] Configuration error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Configuration error: {e}")
            return 1
        except CertificateError as e:
            print(f"[!] Certificate error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Certificate error: {e}")
            return 1
        except APIError as e:
            print(f"[!] API error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"API error: {e}")
            return 2
        except KeyboardInterrupt:
            print("\n[!] Interrupted by user")
            return 130
        except Exception as e:
            print(f"[!] Unexpected error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Unexpected error: {e}")
            return 1
        finally:
            if self.logger:
                self.logger.close()


def main():
    """Main entry point."""
    app = AppGwCertSwap()
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
