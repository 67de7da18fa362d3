from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


def build_url_with_params(base_uri: str, params: Mapping[str, Optional[str]]) -> str:
    """
    Append query parameters to base_uri, keeping the query it already has.
    Parameters whose value is None are dropped.
    """
    url = urlparse(base_uri)
    query = parse_qsl(url.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunparse(url._replace(query=urlencode(query)))
