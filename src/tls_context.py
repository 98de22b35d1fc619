"""SSLContext factory for the outbound ingestion connection."""

import ssl


def create_client_context(ca_file: str = "") -> ssl.SSLContext:
    """Create a context that verifies the server cert and hostname.

    Uses the system trust store unless ``ca_file`` is given.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if ca_file:
        ctx.load_verify_locations(ca_file)
    else:
        ctx.load_default_certs()
    ctx.verify_mode = ssl.CERT_REQUIRED
    ctx.check_hostname = True
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx
