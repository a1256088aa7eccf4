"""
Look-alike predicates used to score CSV columns and to untangle fields that
proxies export in the wrong column. Each one is a plain function over a single
string so it can be checked against literal fixtures.
"""
import re
from typing import Any

MISSING_TOKENS = {"", "-", "--", "null", "none", "nan", "n/a"}

UA_TOKENS = re.compile(r'Mozilla|AppleWebKit|Chrome|Firefox|Safari|curl|Wget|bot|python-requests|okhttp', re.IGNORECASE)
# 'Product/1.2 (platform; details)'
UA_PRODUCT_VERSION = re.compile(r'[A-Za-z][\w.\-]*/[\w.\-]+.*\(.*\)')
PRODUCT_TOKEN = re.compile(r'^[A-Za-z][\w.\-]*/\d')

IPV4 = re.compile(r'^\d{1,3}(?:\.\d{1,3}){3}$')
HOST_WITH_PATH = re.compile(r'^(?:[A-Za-z0-9\-]+\.)+[A-Za-z]{2,}(?::\d+)?/\S*$')
HTTP_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD", "CONNECT", "TRACE"}


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    return str(value).strip().lower() in MISSING_TOKENS


def looks_like_user_agent(value: Any) -> bool:
    if value is None:
        return False
    s = str(value).strip()
    if len(s) <= 10 or s.lower().startswith(('http://', 'https://', '/')):
        return False
    if UA_PRODUCT_VERSION.search(s):
        return True
    # a bare token like 'safari.apple.com' is a host, 'curl/8.4.0' is a client
    return bool(UA_TOKENS.search(s)) and (' ' in s or bool(PRODUCT_TOKEN.match(s)))


def looks_like_ipv4(value: Any) -> bool:
    if value is None:
        return False
    s = str(value).strip()
    if not IPV4.match(s):
        return False
    return all(int(octet) <= 255 for octet in s.split('.'))


def looks_like_email(value: Any) -> bool:
    return value is not None and '@' in str(value)


def looks_like_host_with_path(value: Any) -> bool:
    """'example.com/login' is a URL missing its scheme, not a host."""
    if value is None:
        return False
    s = str(value).strip()
    if '://' in s or ' ' in s:
        return False
    return bool(HOST_WITH_PATH.match(s))


def looks_like_http_method(value: Any) -> bool:
    return value is not None and str(value).strip().upper() in HTTP_METHODS
