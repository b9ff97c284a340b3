from flask_talisman import Talisman

def init_security(app):
    """
    Production/staging security headers.
    The service only answers JSON and the opt-out pages, so the CSP is locked down
    to same-origin styles and nothing else.
    """
    csp = {
        "default-src": ["'none'"],
        "style-src":   ["'self'", "'unsafe-inline'"],  # inline styles in the opt-out pages
        "img-src":     ["'self'", "data:"],
        "frame-ancestors": ["'none'"],
        "base-uri":    ["'none'"],
        "form-action": ["'self'"],
    }

    Talisman(
        app,
        content_security_policy=csp,
        force_https=True,
        strict_transport_security=True,
        session_cookie_secure=True,
        frame_options="DENY",
        referrer_policy="no-referrer",
    )
