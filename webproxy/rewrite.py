# Rewriting of fetched HTML and CSS so that every sub-request comes back through the proxy.

import re
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup
from jinja2 import Environment, PackageLoader, select_autoescape

from webproxy.config import PROXY_PREFIX

SKIPPED_SCHEMES = ('javascript:', 'vbscript:', 'data:', 'blob:', 'file:', 'ftp:', 'mailto:', 'tel:')

# Tags are matched by attribute, not by name, so custom elements are covered too.
URL_ATTRIBUTES = ('src', 'href', 'action', 'poster')

CSS_URL_RE = re.compile(r'''url\(\s*['"]?([^'")\s]+)['"]?\s*\)''')
META_REFRESH_URL_RE = re.compile(r'''(url\s*=\s*)['"]?([^'";]+)['"]?''', re.IGNORECASE)

_templates = Environment(
    loader=PackageLoader('webproxy', 'templates'),
    autoescape=select_autoescape(['html']),
)


def proxy_url(absolute_url):
    """The proxy endpoint URL that fetches absolute_url. Encoded like JS encodeURIComponent."""
    return PROXY_PREFIX + quote(absolute_url, safe="!~*'()")


def is_proxied(url):
    return url.startswith(PROXY_PREFIX) or url.startswith('/api/proxy/web?')


def origin_of(page_url):
    match = re.match(r'^([a-zA-Z][a-zA-Z0-9+.-]*://[^/?#]+)', page_url)
    return match.group(1) if match else page_url


def rewrite_url(url, page_url):
    """
    Map a URL found in a page onto the proxy.
    Fragments, non-fetchable schemes and URLs that already point at the proxy are returned unchanged.
    """
    url = url.strip()
    if not url or url.startswith('#') or is_proxied(url):
        return url
    if url.lower().startswith(SKIPPED_SCHEMES):
        return url
    if url.startswith('//'):
        return proxy_url('https:' + url)
    if re.match(r'^https?://', url, re.IGNORECASE):
        return proxy_url(url)
    if url.startswith('/'):
        return proxy_url(origin_of(page_url) + url)
    return proxy_url(urljoin(page_url, url))


def rewrite_srcset(value, page_url):
    candidates = []
    for part in value.split(','):
        part = part.strip()
        if not part:
            continue
        url, *descriptor = part.split(None, 1)
        candidates.append(' '.join([rewrite_url(url, page_url)] + descriptor))
    return ', '.join(candidates)


def rewrite_css(css, page_url):
    """
    Rewrite absolute and root-relative url(...) references.
    Plain relative references are left alone: the browser resolves them against the proxied stylesheet URL.
    """
    origin = origin_of(page_url)

    def replacer(match):
        url = match.group(1)
        if is_proxied(url):
            return match.group(0)
        if url.startswith('//'):
            return f'url("{proxy_url("https:" + url)}")'
        if re.match(r'^https?://', url, re.IGNORECASE):
            return f'url("{proxy_url(url)}")'
        if url.startswith('/'):
            return f'url("{proxy_url(origin + url)}")'
        return match.group(0)

    return CSS_URL_RE.sub(replacer, css)


def _rewrite_meta_refresh(tag, page_url):
    content = tag.get('content', '')
    tag['content'] = META_REFRESH_URL_RE.sub(
        lambda m: m.group(1) + rewrite_url(m.group(2), page_url), content, count=1)


def render_injection(page_url):
    return _templates.get_template('inject.html').render(
        proxy_base=PROXY_PREFIX,
        target_origin=origin_of(page_url),
        target_url=page_url,
    )


def rewrite_html(html, page_url, from_encoding=None):
    """
    Parse the page, point every URL-bearing attribute at the proxy and
    add the client-side interception script at the end of <head>.
    """
    soup = BeautifulSoup(html, 'html.parser', from_encoding=from_encoding)

    # Resolve against <base href> if present, then drop it: rewritten URLs are absolute.
    base = soup.find('base', href=True)
    if base is not None:
        page_url = urljoin(page_url, base['href'])
        base.decompose()

    for attr in URL_ATTRIBUTES:
        for tag in soup.find_all(attrs={attr: True}):
            value = tag[attr]
            if isinstance(value, str):
                tag[attr] = rewrite_url(value, page_url)

    for tag in soup.find_all(attrs={'srcset': True}):
        tag['srcset'] = rewrite_srcset(tag['srcset'], page_url)

    for tag in soup.find_all('meta', attrs={'http-equiv': re.compile('^refresh$', re.IGNORECASE)}):
        _rewrite_meta_refresh(tag, page_url)

    for style_tag in soup.find_all('style'):
        if style_tag.string:
            style_tag.string = rewrite_css(style_tag.string, page_url)

    for tag in soup.find_all(style=True):
        tag['style'] = rewrite_css(tag['style'], page_url)

    injection = BeautifulSoup(render_injection(page_url), 'html.parser')
    if soup.head is not None:
        soup.head.append(injection)
    else:
        soup.insert(0, injection)

    return str(soup)
