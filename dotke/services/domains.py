import re
import time


TLDS = (".co.ke", ".or.ke", ".me.ke", ".ne.ke")
DEFAULT_TLD = TLDS[0]

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class InvalidDomain(ValueError):
    pass


class InvalidPhoneNumber(ValueError):
    pass


def normalize_label(text: str) -> str:
    """Reduce user input such as ``https://www.Foo.co.ke/about`` to the bare label ``foo``."""
    s = (text or "").strip().lower()
    s = re.sub(r"^https?://", "", s)
    s = re.sub(r"^www\.", "", s)
    s = re.sub(r"/.*$", "", s)
    for tld in TLDS:
        if s.endswith(tld):
            s = s[: -len(tld)]
            break
    else:
        s = re.sub(r"\.ke$", "", s)
    return re.sub(r"[^a-z0-9-]", "", s)


def normalize_domain(text: str, default_tld: str = DEFAULT_TLD) -> str:
    """Return the full, lower-cased domain name for a search term.

    A term that already names one of the supported second-level zones keeps
    it; anything else is placed under ``default_tld``.
    """
    if default_tld not in TLDS:
        raise InvalidDomain(f"Unsupported zone: {default_tld}")
    raw = (text or "").strip().lower()
    raw = re.sub(r"^https?://", "", raw)
    raw = re.sub(r"^www\.", "", raw)
    raw = re.sub(r"/.*$", "", raw)
    tld = next((t for t in TLDS if raw.endswith(t)), None)
    if tld is None and raw.endswith(".ke") and raw.count(".") > 1:
        raise InvalidDomain(f"Unsupported zone for {text!r}")
    stem = raw[: -len(tld)] if tld else re.sub(r"\.ke$", "", raw)
    # only second-level names are sold; sub.foo.co.ke is not foo.co.ke
    if "." in stem:
        raise InvalidDomain(f"Subdomains cannot be booked: {text!r}")
    label = normalize_label(raw)
    if not _LABEL_RE.match(label):
        raise InvalidDomain(f"Invalid domain label in {text!r}")
    return f"{label}{tld or default_tld}"


def normalize_phone(text: str) -> str:
    """Canonicalise a Kenyan mobile number to ``254XXXXXXXXX``."""
    phone = re.sub(r"\D", "", text or "")
    if phone.startswith("254") and len(phone) == 12:
        subscriber = phone[3:]
    elif phone.startswith("0") and len(phone) == 10:
        subscriber = phone[1:]
    elif len(phone) == 9:
        subscriber = phone
    else:
        raise InvalidPhoneNumber(f"Unrecognised phone number: {text!r}")
    # mobile ranges are 7XX and 1XX
    if subscriber[0] not in ("7", "1"):
        raise InvalidPhoneNumber(f"Not a mobile number: {text!r}")
    return "254" + subscriber


def make_account_reference() -> str:
    return f"DOMAIN_{int(time.time() * 1000)}"
