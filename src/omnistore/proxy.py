"""Proxy URL helpers shared by the S3 and GCP backends.

Both botocore and requests (through urllib3) send a Basic
Proxy-Authorization header on CONNECT when the proxy URL carries
userinfo, so credentials are embedded in the URL rather than set as
headers on each request.
"""

from __future__ import annotations

from urllib.parse import quote, urlsplit, urlunsplit

from omnistore.config import ProxyConfig


def proxy_url(proxy: ProxyConfig) -> str:
    """Return the proxy URL, with percent-encoded credentials when both are set."""
    if not proxy.has_credentials:
        return proxy.url

    parts = urlsplit(proxy.url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    userinfo = f"{quote(proxy.username, safe='')}:{quote(proxy.password, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, ""))


def proxy_mapping(proxy: ProxyConfig | None) -> dict[str, str]:
    """Return a requests/botocore style proxies mapping for both schemes."""
    if proxy is None:
        return {}
    url = proxy_url(proxy)
    return {"http": url, "https": url}
