"""
Pagination strategies for list endpoints.

A strategy drives a ``fetch(path, params, url=None)`` callable that returns
the decoded page and the response headers, and materializes all pages into
one list.
"""

import re
import logging
from typing import Callable, Dict, List, Any, Optional, Tuple

logger = logging.getLogger(__name__)

Fetch = Callable[..., Tuple[Any, Any]]

_LINK_PATTERN = re.compile(r'<([^>]*)>\s*((?:;\s*[^;,]*)*)')
_REL_PATTERN = re.compile(r'rel\s*=\s*"?([^";]+)"?')


def parse_link_header(value: Optional[str]) -> Dict[str, str]:
    """
    Parse an RFC 8288 Link header.

    Args:
        value: Header value, e.g. ``<https://host/api?page=2>; rel="next"``

    Returns:
        Mapping of relation type to URL. A link with several relation types
        (``rel="next last"``) is registered under each of them.
    """
    links = {}
    if not value:
        return links

    for match in _LINK_PATTERN.finditer(value):
        url, params = match.group(1), match.group(2)
        rel = _REL_PATTERN.search(params)
        if not rel:
            continue
        for rel_type in rel.group(1).split():
            links.setdefault(rel_type.lower(), url)
    return links


def _as_list(data: Any, what: str) -> List[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON list from {what}, got {type(data).__name__}")
    return data


class LinkHeaderPagination:
    """Follows the ``rel="next"`` URL of the Link header (GitLab style)."""

    def __init__(self, size_param: str = 'per_page'):
        self.size_param = size_param

    def collect(self, fetch: Fetch, path: str, params: Dict[str, Any], page_size: int) -> List[Any]:
        page_params = dict(params)
        page_params[self.size_param] = page_size

        data, headers = fetch(path, page_params)
        result = list(_as_list(data, path))
        pages = 1

        next_url = parse_link_header(headers.get('Link') if headers else None).get('next')
        while next_url:
            data, headers = fetch(None, None, url=next_url)
            result.extend(_as_list(data, next_url))
            pages += 1
            next_url = parse_link_header(headers.get('Link') if headers else None).get('next')

        logger.debug(f"Retrieved {len(result)} items from {path} across {pages} pages")
        return result


class OffsetPagination:
    """
    Requests pages by offset until a short page is returned.

    With ``by_items`` the offset counts items (Keycloak ``first``), otherwise
    it is a page index (Mattermost ``page``).
    """

    def __init__(self, offset_param: str = 'page', size_param: str = 'per_page', by_items: bool = False):
        self.offset_param = offset_param
        self.size_param = size_param
        self.by_items = by_items

    def collect(self, fetch: Fetch, path: str, params: Dict[str, Any], page_size: int) -> List[Any]:
        result = []
        offset = 0
        pages = 0
        while True:
            page_params = dict(params)
            page_params[self.offset_param] = offset
            page_params[self.size_param] = page_size

            data, _ = fetch(path, page_params)
            items = _as_list(data, path)
            result.extend(items)
            pages += 1

            if len(items) < page_size:
                break
            offset += page_size if self.by_items else 1

        logger.debug(f"Retrieved {len(result)} items from {path} across {pages} pages")
        return result
