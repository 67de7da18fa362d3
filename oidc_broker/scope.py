from dataclasses import dataclass, field

from oidc_broker.utils.exceptions import AuthorizeError


# Pseudo-scopes answered by the broker itself rather than forwarded upstream.
OPENID_SCOPE = "openid"
GROUPS_SCOPE = "groups"


@dataclass
class RequestedScopes:
    openid: bool = False
    groups: bool = False
    forwarded: list[str] = field(default_factory=list)


def _valid_scope_char(ch: str) -> bool:
    # scope-token = 1*( %x21 / %x23-5B / %x5D-7E ), joined by spaces
    # Source: https://www.rfc-editor.org/rfc/rfc6749#section-3.3
    return ch == " " or ch == "\x21" or "\x23" <= ch <= "\x5b" or "\x5d" <= ch <= "\x7e"


def parse_scopes(scope: str) -> RequestedScopes:
    """
    Split a space-delimited scope string and pull out `openid` and `groups`.

    Raises AuthorizeError(invalid_scope) when the string contains characters
    outside the OAuth2 scope-token alphabet. Whether `openid` is mandatory is
    left to the caller.
    """
    invalid = [ch for ch in scope if not _valid_scope_char(ch)]
    if invalid:
        raise AuthorizeError(
            "invalid_scope",
            'Encountered invalid character(s) in scope: "' + '", "'.join(invalid) + '"',
        )

    requested = RequestedScopes()
    for token in scope.split(" "):
        if not token:
            continue
        if token == OPENID_SCOPE:
            requested.openid = True
        elif token == GROUPS_SCOPE:
            requested.groups = True
        elif token not in requested.forwarded:
            requested.forwarded.append(token)
    return requested
