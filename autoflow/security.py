from flask_talisman import Talisman

def init_security(app):
    """
    Production/staging security headers. The API serves JSON and redirects
    only, so the CSP is strict; OAuth consent pages and Stripe Checkout are
    reached by top-level navigation, which CSP does not restrict.
    """
    csp = {
        "default-src": ["'none'"],
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
        referrer_policy="strict-origin-when-cross-origin",
    )
