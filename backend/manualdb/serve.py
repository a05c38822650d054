import os
from typing import Dict, Optional

import uvicorn


def _ssl_options() -> Dict[str, Optional[str]]:
    certfile = os.getenv("SSL_CERTFILE")
    keyfile = os.getenv("SSL_KEYFILE")

    if not any([certfile, keyfile]):
        return {}

    options: Dict[str, Optional[str]] = {}
    if certfile:
        options["ssl_certfile"] = certfile
    if keyfile:
        options["ssl_keyfile"] = keyfile
    return options


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload_enabled = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}
    log_level = os.getenv("LOG_LEVEL", "info").lower()

    uvicorn.run(
        "manualdb.main:app",
        host=host,
        port=port,
        reload=reload_enabled,
        log_level=log_level,
        proxy_headers=True,
        **_ssl_options(),
    )


if __name__ == "__main__":
    main()
