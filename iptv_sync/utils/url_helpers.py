from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SECRET_PARAMS = {"username", "password", "token"}


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***:***@" + netloc.split("@", 1)[1]

    query = parts.query
    if query:
        pairs = [
            (key, "***" if key.lower() in _SECRET_PARAMS else value)
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="*")

    # Xtream playback paths embed credentials: /live/<user>/<pass>/<id>.ts
    path_parts = parts.path.split("/")
    if len(path_parts) >= 5 and path_parts[1] in ("live", "movie", "series"):
        path_parts[2] = path_parts[3] = "***"
    path = "/".join(path_parts)

    return urlunsplit((parts.scheme, netloc, path, query, parts.fragment))
