"""
sap_b1.api - Run as module

Usage: python -m sap_b1.api
"""

import os
import uvicorn


def main():
    """Run the diagnostics gateway server."""
    host = os.environ.get("SAP_B1_API_HOST", "0.0.0.0")
    port = int(os.environ.get("SAP_B1_API_PORT", "5050"))
    reload = os.environ.get("SAP_B1_API_RELOAD", "false").lower() == "true"
    log_level = os.environ.get("SAP_B1_LOG_LEVEL", "info")

    print(f"Starting SAP B1 diagnostics gateway on {host}:{port}")

    uvicorn.run(
        "sap_b1.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
