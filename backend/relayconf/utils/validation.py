"""
Format and semantic checks for Postfix parameter values.

Checks accumulate (field, message) errors on a Validator instead of failing
fast, so every problem in a submission is reported in one round trip.
Nothing here touches the filesystem or the MTA.
"""
import ipaddress
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

# RFC 1123 hostname / domain
_LABEL = r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*$")

# RFC 5322 dot-atom local part
LOCAL_PART_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*$")

# [hostname]:port, hostname:port or hostname
RELAYHOST_RE = re.compile(r"^(\[)?([a-zA-Z0-9.-]+)(\])?(?::([0-9]{1,5}))?$")

# $myhostname, ${mydomain}
VARIABLE_RE = re.compile(r"^\$(?:[a-z_][a-z0-9_]*|\{[a-z_][a-z0-9_]*\})$")

# type:name lookup table reference, e.g. hash:/etc/postfix/sasl_passwd
TABLE_REF_RE = re.compile(r"^[a-z][a-z0-9_]*:\S+$")

RESTRICTION_RE = re.compile(r"^[a-z][a-z0-9_]*$")

CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

TLS_LEVELS = ("", "none", "may", "encrypt", "dane", "verify", "secure")

# Restrictions followed by one argument (a table, a DNS list or a policy server)
ARGUMENT_RESTRICTIONS = frozenset((
    "reject_rbl_client", "reject_rhsbl_client", "reject_rhsbl_sender",
    "reject_rhsbl_recipient", "reject_rhsbl_helo", "reject_rhsbl_reverse_client",
    "permit_dnswl_client", "permit_rhswl_client", "check_policy_service",
))

# transport:nexthop, transport: or :nexthop
TRANSPORT_RESULT_RE = re.compile(r"^([a-z][a-z0-9_-]*)?:(.*)$")

# Transports whose next hop is a relay host
SMTP_TRANSPORTS = frozenset(("", "smtp", "relay"))


def restriction_takes_argument(name: str) -> bool:
    return name in ARGUMENT_RESTRICTIONS or (name.startswith("check_") and name.endswith("_access"))


def _valid_transport_pattern(pattern: str) -> bool:
    if pattern == "*":
        return True
    if "@" in pattern:
        local, _, domain = pattern.rpartition("@")
        return (not local or LOCAL_PART_RE.match(local) is not None) and DOMAIN_RE.match(domain) is not None
    return DOMAIN_RE.match(pattern[1:] if pattern.startswith(".") else pattern) is not None


def _valid_sender_pattern(sender: str) -> bool:
    local, at, domain = sender.rpartition("@")
    if not at:
        return False
    return (not local or LOCAL_PART_RE.match(local) is not None) and DOMAIN_RE.match(domain) is not None


@dataclass(frozen=True)
class FieldError:
    """A single validation problem."""
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


class Validator:
    """Accumulates validation errors across any number of checks."""

    def __init__(self):
        self._errors: List[FieldError] = []

    def add_error(self, field: str, message: str) -> None:
        self._errors.append(FieldError(field, message))

    def has_errors(self) -> bool:
        return bool(self._errors)

    @property
    def errors(self) -> List[FieldError]:
        return list(self._errors)

    def errors_for(self, field: str) -> List[FieldError]:
        return [e for e in self._errors if e.field == field]

    # -- generic -----------------------------------------------------------

    def validate_required(self, field: str, value: Optional[str], message: str = "is required") -> bool:
        """Returns True when the value is present and not blank."""
        if value is None or not value.strip():
            self.add_error(field, message)
            return False
        return True

    def validate_max_length(self, field: str, value: str, max_len: int) -> None:
        if len(value) > max_len:
            self.add_error(field, f"value too long (max {max_len} characters)")

    def validate_safe_text(self, field: str, value: str, multiline: bool = False) -> bool:
        """
        Reject characters that would break main.cf's line grammar.

        Returns True when the value is safe to run further checks on.
        """
        if CONTROL_CHARS_RE.search(value):
            self.add_error(field, "value contains control characters")
            return False
        if not multiline and "\n" in value:
            self.add_error(field, "value must be a single line")
            return False
        for line in value.split("\n"):
            if line.strip().startswith("#"):
                self.add_error(field, "value lines must not start with '#'")
                return False
        return True

    def validate_choice(self, field: str, value: str, choices: Iterable[str]) -> None:
        choices = tuple(choices)
        if value not in choices:
            allowed = ", ".join(c for c in choices if c)
            self.add_error(field, f"invalid value (must be one of: {allowed})")

    def validate_int_range(self, field: str, value: str, minimum: int, maximum: int) -> None:
        if value == "":
            return
        try:
            number = int(value)
        except ValueError:
            self.add_error(field, "must be an integer")
            return
        if number < minimum or number > maximum:
            self.add_error(field, f"must be between {minimum} and {maximum}")

    # -- names -------------------------------------------------------------

    def validate_domain(self, field: str, value: str, allow_variables: bool = False) -> None:
        if value == "":
            return
        if allow_variables and VARIABLE_RE.match(value):
            return
        if len(value) > 253:
            self.add_error(field, "domain name too long (max 253 characters)")
            return
        if not DOMAIN_RE.match(value):
            self.add_error(field, "invalid domain name format")

    def validate_hostname(self, field: str, value: str) -> None:
        if value == "":
            return
        if len(value) > 253:
            self.add_error(field, "hostname too long (max 253 characters)")
            return
        if not DOMAIN_RE.match(value):
            self.add_error(field, "invalid hostname format")

    def validate_domain_list(self, field: str, value: str, allow_variables: bool = True) -> None:
        for number, entry in enumerate(value.split("\n"), start=1):
            entry = entry.strip()
            if not entry:
                continue
            if allow_variables and VARIABLE_RE.match(entry):
                continue
            if len(entry) > 253 or not DOMAIN_RE.match(entry):
                self.add_error(field, f"invalid domain at line {number}: {entry}")

    def validate_email(self, field: str, value: str, allow_local: bool = False) -> None:
        """
        Check an email address.

        With allow_local a bare local part such as "postmaster" is accepted,
        which Postfix resolves against $myorigin.
        """
        if value == "":
            return
        local, at, domain = value.rpartition("@")
        if not at:
            if not (allow_local and LOCAL_PART_RE.match(value)):
                self.add_error(field, "invalid email address")
            return
        if len(local) > 64 or not LOCAL_PART_RE.match(local):
            self.add_error(field, "invalid email address")
        elif len(domain) > 253 or not DOMAIN_RE.match(domain):
            self.add_error(field, "invalid email address domain")

    # -- network -----------------------------------------------------------

    def validate_cidr_list(self, field: str, value: str) -> None:
        """
        Validate a newline-separated list of networks or single addresses.

        Each line is checked independently; IPv6 entries may be written in
        Postfix's bracketed form, e.g. [::1]/128.
        """
        for number, line in enumerate(value.split("\n"), start=1):
            entry = line.strip()
            if not entry:
                continue
            address = re.sub(r"^\[([0-9a-fA-F:.]+)\]", r"\1", entry)
            if "/" not in address:
                try:
                    ipaddress.ip_address(address)
                except ValueError:
                    self.add_error(field, f"invalid IP address at line {number}: {entry}")
                continue
            try:
                ipaddress.ip_network(address, strict=False)
            except ValueError:
                self.add_error(field, f"invalid CIDR notation at line {number}: {entry}")

    def validate_port(self, field: str, port) -> None:
        try:
            number = int(port)
        except (TypeError, ValueError):
            self.add_error(field, "port must be a number")
            return
        if number < 1 or number > 65535:
            self.add_error(field, "port must be between 1 and 65535")

    def validate_relayhost(self, field: str, value: str) -> None:
        if value == "":
            return
        if len(value) > 255:
            self.add_error(field, "relayhost too long (max 255 characters)")
            return
        match = RELAYHOST_RE.match(value)
        if not match or bool(match.group(1)) != bool(match.group(3)):
            self.add_error(field, "invalid relayhost format (expected [hostname]:port or hostname:port)")
            return
        host, port = match.group(2), match.group(4)
        if not DOMAIN_RE.match(host):
            self.add_error(field, "invalid relayhost hostname")
        if port is not None:
            self.validate_port(field, port)

    def validate_inet_interfaces(self, field: str, value: str) -> None:
        if value in ("", "all", "loopback-only"):
            return
        for entry in re.split(r"[\s,]+", value.strip()):
            if not entry:
                continue
            try:
                ipaddress.ip_address(entry.strip("[]"))
            except ValueError:
                if not DOMAIN_RE.match(entry):
                    self.add_error(field, f"invalid interface address: {entry}")

    # -- TLS / SASL ----------------------------------------------------------

    def validate_tls_level(self, field: str, value: str) -> None:
        if value not in TLS_LEVELS:
            self.add_error(
                field,
                "invalid TLS security level (must be: none, may, encrypt, dane, verify, or secure)"
            )

    def validate_absolute_path(self, field: str, value: str) -> None:
        if value == "":
            return
        if not value.startswith("/") or re.search(r"\s", value):
            self.add_error(field, "must be an absolute path without whitespace")

    def validate_table_reference(self, field: str, value: str) -> None:
        if value == "":
            return
        for entry in re.split(r"[\s,]+", value.strip()):
            if entry and not TABLE_REF_RE.match(entry):
                self.add_error(field, f"invalid lookup table (expected type:name): {entry}")

    def validate_option_list(self, field: str, value: str, options: Iterable[str]) -> None:
        options = set(options)
        for entry in re.split(r"[\s,]+", value.strip()):
            if entry and entry not in options:
                self.add_error(field, f"unknown option: {entry}")

    def validate_restriction_list(self, field: str, value: str) -> None:
        """
        Check a restriction list in one-restriction-per-line form.

        A line is a restriction name, followed by its argument for the
        restrictions that take one (check_*_access, reject_rbl_client, ...).
        """
        for number, line in enumerate(value.split("\n"), start=1):
            words = line.split()
            if not words:
                continue
            name = words[0]
            if not RESTRICTION_RE.match(name):
                self.add_error(field, f"invalid restriction at line {number}: {line.strip()}")
            elif restriction_takes_argument(name) and len(words) != 2:
                self.add_error(field, f"{name} needs exactly one argument at line {number}")
            elif not restriction_takes_argument(name) and len(words) != 1:
                self.add_error(field, f"{name} takes no argument at line {number}")

    # -- lookup tables -------------------------------------------------------

    def _next_hop_error(self, value: str) -> Optional[str]:
        scratch = Validator()
        scratch.validate_relayhost("next hop", value)
        return scratch.errors[0].message if scratch.errors else None

    def validate_transport_table(self, field: str, value: str) -> None:
        """
        Check transport table lines of the form "pattern transport:nexthop".

        The pattern is a domain, a .domain (subdomains), an address or "*".
        For the SMTP-style transports the next hop must be a relay host; the
        text after error: and friends is free form.
        """
        for number, line in enumerate(value.split("\n"), start=1):
            parts = line.split(None, 1)
            if not parts:
                continue
            if len(parts) != 2:
                self.add_error(field, f"missing transport at line {number}: {line.strip()}")
                continue
            pattern, result = parts
            if not _valid_transport_pattern(pattern):
                self.add_error(field, f"invalid destination at line {number}: {pattern}")
            match = TRANSPORT_RESULT_RE.match(result)
            if not match:
                self.add_error(field, f"invalid transport at line {number}: {result}")
                continue
            transport, nexthop = match.group(1) or "", match.group(2)
            if transport in SMTP_TRANSPORTS and nexthop:
                error = self._next_hop_error(nexthop)
                if error:
                    self.add_error(field, f"{error} at line {number}: {nexthop}")

    def validate_sender_relay_table(self, field: str, value: str) -> None:
        """Check sender-dependent relay lines of the form "sender relayhost"."""
        for number, line in enumerate(value.split("\n"), start=1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) != 2:
                self.add_error(field, f"expected 'sender relayhost' at line {number}: {line.strip()}")
                continue
            sender, relayhost = parts
            if not _valid_sender_pattern(sender):
                self.add_error(field, f"invalid sender at line {number}: {sender}")
            if relayhost != "DUNNO":
                error = self._next_hop_error(relayhost)
                if error:
                    self.add_error(field, f"{error} at line {number}: {relayhost}")

    def validate_credential(self, field: str, value: str, allow_colon: bool = True) -> None:
        """Check a SASL username or password for the credential file format."""
        if not self.validate_required(field, value, "must not be empty"):
            return
        if re.search(r"\s", value):
            self.add_error(field, "must not contain whitespace")
        elif not allow_colon and ":" in value:
            self.add_error(field, "must not contain ':'")
        self.validate_max_length(field, value, 255)
