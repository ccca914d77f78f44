"""
Embedding policy helpers for the iframe check/proxy endpoint.

A page is considered embeddable unless one of these blocks it:

1. ``X-Frame-Options`` containing ``deny`` or ``sameorigin``.
2. A ``Content-Security-Policy`` (response header or ``<meta http-equiv>``)
   whose ``frame-ancestors`` directive is ``'none'`` or does not contain ``*``.

When proxying, the blocking headers are replaced with a permissive policy and
HTML documents get a ``<base>`` tag, a title hint, font overrides and a click
interceptor that hands link navigation back to the parent window.
"""
import html as html_lib
import re
from typing import Optional
from urllib.parse import quote, urlparse

import httpx

from constants import FONTS_STYLESHEET_URL
from schemas.iframe_check import EmbedCheckResult

AUTO_PROXY_DOMAINS = [
    "wikipedia.org",
    "wikimedia.org",
    "wikipedia.com",
]

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Ch-Ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"macOS"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

PERMISSIVE_CSP = "frame-ancestors *; sandbox allow-scripts allow-forms allow-same-origin allow-popups"

# Dropped from proxied responses. The body is re-encoded, so length and
# encoding headers from upstream no longer apply.
STRIPPED_HEADERS = {
    "x-frame-options",
    "content-security-policy",
    "content-security-policy-report-only",
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
}

HEAD_OPEN_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)
TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
META_CSP_RE = re.compile(
    r"""<meta\s+http-equiv=["']Content-Security-Policy["']\s+content=["']([^"']*)["'][^>]*>""",
    re.IGNORECASE,
)

FONT_OVERRIDE_STYLES = (
    '<link rel="stylesheet" href="{stylesheet}">'
    "<style>img{{image-rendering:pixelated!important}}"
    'body,div,span,p,h1,h2,h3,h4,h5,h6,button,input,select,textarea,[style*="font-family"],[style*="sans-serif"],'
    '[style*="Helvetica"],[style*="Arial"],[style*="Verdana"],[style*="Geneva"]'
    '{{font-family:"Geneva-12","ArkPixel","SerenityOS-Emoji",sans-serif!important}}'
    '[style*="serif"],[style*="Georgia"],[style*="Times New Roman"],[style*="Times"],[style*="Palatino"]'
    '{{font-family:"Mondwest","Yu Mincho","Hiragino Mincho Pro","Georgia","Palatino","SerenityOS-Emoji",serif!important}}'
    'code,pre,[style*="monospace"],[style*="Courier New"],[style*="Courier"],[style*="Monaco"],[style*="Menlo"]'
    '{{font-family:"Monaco","ArkPixel","SerenityOS-Emoji",monospace!important}}'
    '*{{font-family:"Geneva-12","ArkPixel","SerenityOS-Emoji",sans-serif}}</style>'
)

CLICK_INTERCEPTOR_SCRIPT = """
<script>
  document.addEventListener('click', function(event) {
    var targetElement = event.target.closest('a');
    if (targetElement && targetElement.href) {
      event.preventDefault();
      event.stopPropagation();
      try {
        var absoluteUrl = new URL(targetElement.getAttribute('href'), document.baseURI || window.location.href).href;
        window.parent.postMessage({ type: 'iframeNavigation', url: absoluteUrl }, '*');
      } catch (e) { console.error('Error resolving/posting URL:', e); }
    }
  }, true);
</script>
"""


def normalize_target(url: str) -> str:
    url = url.strip()
    return url if url.startswith("http") else f"https://{url}"


def should_auto_proxy(url: str) -> bool:
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return any(hostname == d or hostname.endswith(f".{d}") for d in AUTO_PROXY_DOMAINS)


def wayback_url(url: str, year: str, month: str) -> str:
    return f"https://web.archive.org/web/{year}{month}01/{url}"


def normalize_url_for_cache_key(url: Optional[str]) -> Optional[str]:
    """origin + path, no query or fragment, trailing slash dropped, root path empty."""
    if not url:
        return None
    temp = url.strip()
    if not temp.startswith("http://") and not temp.startswith("https://"):
        temp = f"https://{temp}"
    try:
        parsed = urlparse(temp)
    except ValueError:
        return temp
    if not parsed.netloc:
        return temp
    path = parsed.path
    if path == "/":
        path = ""
    elif path.endswith("/"):
        path = path[:-1]
    return f"{parsed.scheme}://{parsed.netloc.lower()}{path}"


def extract_title(document: str) -> Optional[str]:
    match = TITLE_RE.search(document)
    if not match:
        return None
    return html_lib.unescape(match.group(1)).strip() or None


def extract_meta_csp(document: str) -> str:
    match = META_CSP_RE.search(document)
    return match.group(1) if match else ""


def frame_ancestors_blocks(csp: str) -> bool:
    if not csp:
        return False
    directive = next(
        (d.strip() for d in csp.lower().split(";") if d.strip().startswith("frame-ancestors")),
        None,
    )
    if directive is None:
        return False
    value = directive[len("frame-ancestors"):].strip()
    if value == "'none'":
        return True
    # anything without a wildcard is treated as blocking cross-origin embeds
    return "*" not in value


def x_frame_options_blocks(value: str) -> bool:
    value = (value or "").lower()
    return "deny" in value or "sameorigin" in value


def evaluate_embedding(headers: httpx.Headers, document: Optional[str] = None) -> EmbedCheckResult:
    x_frame_options = headers.get("x-frame-options", "")
    header_csp = headers.get("content-security-policy", "")
    meta_csp = extract_meta_csp(document) if document else ""
    title = extract_title(document) if document else None

    if x_frame_options_blocks(x_frame_options):
        reason = f"X-Frame-Options: {x_frame_options}"
    elif frame_ancestors_blocks(meta_csp):
        reason = f"Content-Security-Policy (meta): {meta_csp}"
    elif frame_ancestors_blocks(header_csp):
        reason = f"Content-Security-Policy (header): {header_csp}"
    else:
        reason = None

    return EmbedCheckResult(allowed=reason is None, reason=reason, title=title)


def encode_component(value: str) -> str:
    return quote(value, safe="-_.!~*'()")


def rewrite_html(document: str, target_url: str, title: Optional[str] = None) -> str:
    """Insert the base tag and helpers after <head> and the interceptor before </body>."""
    head_insert = f'<base href="{html_lib.escape(target_url, quote=True)}">'
    if title:
        head_insert += f'<meta name="page-title" content="{encode_component(title)}">'
    head_insert += FONT_OVERRIDE_STYLES.format(stylesheet=FONTS_STYLESHEET_URL)

    head = HEAD_OPEN_RE.search(document)
    if head:
        document = document[:head.end()] + head_insert + document[head.end():]
    else:
        document = head_insert + document

    body_end = BODY_CLOSE_RE.search(document)
    if body_end:
        document = document[:body_end.start()] + CLICK_INTERCEPTOR_SCRIPT + document[body_end.start():]
    else:
        document += CLICK_INTERCEPTOR_SCRIPT
    return document


def proxied_headers(upstream_headers: httpx.Headers) -> dict:
    headers = {
        key: value for key, value in upstream_headers.items()
        if key.lower() not in STRIPPED_HEADERS
    }
    headers["content-security-policy"] = PERMISSIVE_CSP
    headers["access-control-allow-origin"] = "*"
    return headers


def is_html(headers: httpx.Headers) -> bool:
    return "text/html" in headers.get("content-type", "")
