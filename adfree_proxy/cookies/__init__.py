from .cookie import Cookie, parse_set_cookie
from .jar import CookieJar

__all__ = ["Cookie", "CookieJar", "parse_set_cookie"]
