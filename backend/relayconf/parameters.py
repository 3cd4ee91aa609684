"""
Declarative schema of the Postfix parameters managed by relayconf.

Each managed key is described once here: its category, how its value is
canonicalised and validated, whether it is secret, and where it ends up
(main.cf, the SASL credential file or a lookup table file). Validation,
diffing, merging, rendering order and masking all read from this table.
"""
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from relayconf.constants import MAX_TABLE_LENGTH, MAX_VALUE_LENGTH, REDACTED
from relayconf.utils.validation import Validator, restriction_takes_argument

# Category names in main.cf render order
GENERAL = "general"
RELAY = "relay"
TLS = "tls"
AUTHENTICATION = "authentication"
RESTRICTIONS = "restrictions"

CATEGORIES = (GENERAL, RELAY, TLS, AUTHENTICATION, RESTRICTIONS)

TARGET_MAIN_CF = "main_cf"
TARGET_CREDENTIALS = "credentials"
TARGET_LOOKUP_TABLE = "lookup_table"

SASL_SECURITY_OPTIONS = ("noanonymous", "noplaintext", "noactive", "nodictionary", "mutual_auth", "forward_secrecy")

Check = Callable[[Validator, str, str], None]
Splitter = Callable[[str], List[str]]


@dataclass(frozen=True)
class LookupTable:
    """A postmap-indexed file in the config directory and the main.cf parameter naming it."""
    file_name: str
    map_parameter: str


@dataclass(frozen=True)
class ParameterSpec:
    key: str
    category: str
    check: Check
    description: str = ""
    # Splits a list value into entries; None for scalar values
    splitter: Optional[Splitter] = None
    secret: bool = False
    target: str = TARGET_MAIN_CF
    table: Optional[LookupTable] = None
    max_length: int = MAX_VALUE_LENGTH

    @property
    def multiline(self) -> bool:
        return self.splitter is not None

    def canonicalise(self, value: str) -> str:
        """Normalise a submitted or parsed value to its stored form."""
        value = value.replace("\r\n", "\n").replace("\r", "\n")
        if self.splitter is None:
            return value.strip()
        entries = [" ".join(e.split()) for e in self.splitter(value)]
        return "\n".join(e for e in entries if e)


def _split_on(pattern: str) -> Splitter:
    return lambda value: re.split(pattern, value)


def split_restrictions(value: str) -> List[str]:
    """
    Split a restriction list the way Postfix reads it.

    Commas and any whitespace separate tokens; a restriction that takes an
    argument keeps the token after it on the same entry.
    """
    entries: List[str] = []
    waiting_for_argument = False
    for token in re.split(r"[\s,]+", value):
        if not token:
            continue
        if waiting_for_argument:
            entries[-1] += " " + token
            waiting_for_argument = False
            continue
        entries.append(token)
        waiting_for_argument = restriction_takes_argument(token)
    return entries


def _choice(*choices: str) -> Check:
    return lambda v, field, value: v.validate_choice(field, value, choices)


def _tls_level(v: Validator, field: str, value: str) -> None:
    v.validate_tls_level(field, value)


def _path(v: Validator, field: str, value: str) -> None:
    v.validate_absolute_path(field, value)


def _origin(v: Validator, field: str, value: str) -> None:
    # Postfix reads the origin from a file when the value is a path (Debian's /etc/mailname)
    if value.startswith("/"):
        v.validate_absolute_path(field, value)
    else:
        v.validate_domain(field, value, allow_variables=True)


def _restrictions(v: Validator, field: str, value: str) -> None:
    v.validate_restriction_list(field, value)


def _table_reference(v: Validator, field: str, value: str) -> None:
    v.validate_table_reference(field, value)


PARAMETERS: Dict[str, ParameterSpec] = {spec.key: spec for spec in (
    # General
    ParameterSpec(
        "myhostname", GENERAL,
        lambda v, f, value: v.validate_hostname(f, value),
        "Fully-qualified host name of this mail system",
    ),
    ParameterSpec(
        "mydomain", GENERAL,
        lambda v, f, value: v.validate_domain(f, value),
        "Internet domain name of this mail system",
    ),
    ParameterSpec(
        "myorigin", GENERAL, _origin,
        "Domain appended to locally-posted mail, or a file containing it",
    ),
    ParameterSpec(
        "inet_interfaces", GENERAL,
        lambda v, f, value: v.validate_inet_interfaces(f, value),
        "Network interfaces Postfix receives mail on",
    ),
    ParameterSpec(
        "inet_protocols", GENERAL,
        _choice("all", "ipv4", "ipv6", "ipv4, ipv6"),
        "Internet protocols Postfix uses",
    ),
    ParameterSpec(
        "bounce_notice_recipient", GENERAL,
        lambda v, f, value: v.validate_email(f, value, allow_local=True),
        "Recipient of postmaster notices about bounced mail",
    ),
    ParameterSpec(
        "error_notice_recipient", GENERAL,
        lambda v, f, value: v.validate_email(f, value, allow_local=True),
        "Recipient of postmaster notices about mail system errors",
    ),

    # Relay
    ParameterSpec(
        "relayhost", RELAY,
        lambda v, f, value: v.validate_relayhost(f, value),
        "Next-hop destination for non-local mail",
    ),
    ParameterSpec(
        "mynetworks", RELAY,
        lambda v, f, value: v.validate_cidr_list(f, value),
        "Trusted client networks, one per line",
        splitter=_split_on(r"[\s,]+"),
    ),
    ParameterSpec(
        "relay_domains", RELAY,
        lambda v, f, value: v.validate_domain_list(f, value),
        "Destination domains this system relays mail to, one per line",
        splitter=_split_on(r"[\s,]+"),
    ),
    ParameterSpec("transport_maps", RELAY, _table_reference, "Lookup tables with per-destination routing"),
    ParameterSpec(
        "sender_dependent_relayhost_maps", RELAY, _table_reference,
        "Lookup tables with per-sender relay hosts",
    ),
    ParameterSpec(
        "transport_entries", RELAY,
        lambda v, f, value: v.validate_transport_table(f, value),
        "Per-destination routing, one 'domain transport:nexthop' per line",
        splitter=_split_on(r"\n"),
        target=TARGET_LOOKUP_TABLE,
        table=LookupTable("transport", "transport_maps"),
        max_length=MAX_TABLE_LENGTH,
    ),
    ParameterSpec(
        "sender_relay_entries", RELAY,
        lambda v, f, value: v.validate_sender_relay_table(f, value),
        "Per-sender relay hosts, one 'sender relayhost' per line",
        splitter=_split_on(r"\n"),
        target=TARGET_LOOKUP_TABLE,
        table=LookupTable("sender_relayhost", "sender_dependent_relayhost_maps"),
        max_length=MAX_TABLE_LENGTH,
    ),

    # TLS
    ParameterSpec("smtp_tls_security_level", TLS, _tls_level, "Outbound TLS policy"),
    ParameterSpec("smtpd_tls_security_level", TLS, _tls_level, "Inbound TLS policy"),
    ParameterSpec("smtp_tls_cert_file", TLS, _path, "Client certificate"),
    ParameterSpec("smtp_tls_key_file", TLS, _path, "Client private key"),
    ParameterSpec("smtpd_tls_cert_file", TLS, _path, "Server certificate"),
    ParameterSpec("smtpd_tls_key_file", TLS, _path, "Server private key"),
    ParameterSpec("smtp_tls_CAfile", TLS, _path, "Trusted CA bundle"),
    ParameterSpec(
        "smtp_tls_loglevel", TLS,
        lambda v, f, value: v.validate_int_range(f, value, 0, 4),
        "Outbound TLS logging level (0-4)",
    ),

    # Authentication
    ParameterSpec("smtp_sasl_auth_enable", AUTHENTICATION, _choice("", "yes", "no"), "Enable SASL for outbound mail"),
    ParameterSpec(
        "smtp_sasl_password_maps", AUTHENTICATION,
        _table_reference,
        "Lookup table with relay credentials",
    ),
    ParameterSpec(
        "smtp_sasl_security_options", AUTHENTICATION,
        lambda v, f, value: v.validate_option_list(f, value, SASL_SECURITY_OPTIONS),
        "SASL mechanism restrictions",
    ),
    ParameterSpec(
        "smtp_sasl_tls_security_options", AUTHENTICATION,
        lambda v, f, value: v.validate_option_list(f, value, SASL_SECURITY_OPTIONS),
        "SASL mechanism restrictions over TLS",
    ),
    ParameterSpec(
        "relay_username", AUTHENTICATION,
        lambda v, f, value: v.validate_credential(f, value, allow_colon=False),
        "SASL username for the relay host",
        secret=True, target=TARGET_CREDENTIALS,
    ),
    ParameterSpec(
        "relay_password", AUTHENTICATION,
        lambda v, f, value: v.validate_credential(f, value),
        "SASL password for the relay host",
        secret=True, target=TARGET_CREDENTIALS,
    ),

    # Restrictions
    ParameterSpec(
        "smtpd_relay_restrictions", RESTRICTIONS,
        _restrictions,
        "Relay access restrictions, one per line",
        splitter=split_restrictions,
    ),
    ParameterSpec(
        "smtpd_recipient_restrictions", RESTRICTIONS,
        _restrictions,
        "Recipient restrictions, one per line",
        splitter=split_restrictions,
    ),
    ParameterSpec(
        "smtpd_sender_restrictions", RESTRICTIONS,
        _restrictions,
        "Sender restrictions, one per line",
        splitter=split_restrictions,
    ),
)}

CREDENTIAL_KEYS = tuple(k for k, spec in PARAMETERS.items() if spec.target == TARGET_CREDENTIALS)
SECRET_KEYS = frozenset(k for k, spec in PARAMETERS.items() if spec.secret)
LOOKUP_TABLE_KEYS = tuple(k for k, spec in PARAMETERS.items() if spec.target == TARGET_LOOKUP_TABLE)


def is_secret(key: str) -> bool:
    return key in SECRET_KEYS


def mask(key: str, value: Optional[str]) -> Optional[str]:
    """Replace a secret value with the redaction placeholder."""
    if value is None or not is_secret(key):
        return value
    return REDACTED


def canonicalise(key: str, value: Optional[str]) -> Optional[str]:
    """Canonicalise a value for a known key; unknown keys are only stripped."""
    if value is None:
        return None
    spec = PARAMETERS.get(key)
    if spec is None:
        return value.strip()
    return spec.canonicalise(value)


def check_value(validator: Validator, key: str, value: Optional[str]) -> None:
    """Run every check that applies to one key/value pair."""
    spec = PARAMETERS.get(key)
    if spec is None:
        validator.add_error(key, "unknown parameter")
        return
    if value is None:
        return  # unset: the Postfix default applies
    validator.validate_max_length(key, value, spec.max_length)
    if not validator.validate_safe_text(key, value, multiline=spec.multiline):
        return
    spec.check(validator, key, value)


def validate_parameters(values: Mapping[str, Optional[str]], validator: Optional[Validator] = None) -> Validator:
    """Validate a set of canonical values, returning the accumulating validator."""
    validator = validator or Validator()
    for key, value in values.items():
        check_value(validator, key, value)
    return validator


def main_cf_keys(category: Optional[str] = None) -> List[str]:
    """Managed main.cf keys in render order."""
    return [
        spec.key for spec in PARAMETERS.values()
        if spec.target == TARGET_MAIN_CF and (category is None or spec.category == category)
    ]


def category_of(key: str) -> str:
    spec = PARAMETERS.get(key)
    return spec.category if spec else "other"
