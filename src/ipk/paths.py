import posixpath


def slash(path: str) -> str:
    """Return the tar member form of `path` (prefixed with "./")"""
    if path.startswith("./"):
        return path
    if path.startswith("/"):
        return "." + path
    return "./" + path


def unslash(path: str) -> str:
    """Strip all leading "./" and "/" from `path`

    Interior segments are left alone, so "./foo/./" becomes "foo/./".
    """
    while True:
        if path.startswith("./"):
            path = path[2:]
        elif path.startswith("/"):
            path = path[1:]
        else:
            return path


def clean_path(path: str) -> str:
    """Lexically normalize `path` ("." for the empty path)

    Unlike posixpath.normpath, a leading "//" is collapsed into "/".
    """
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned
