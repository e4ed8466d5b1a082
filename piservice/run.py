#!/usr/bin/env python3
"""Script de démarrage du service Pi."""

import uvicorn

from piservice.config.settings import DEBUG, HOST, PORT


def main():
    print("🚀 Démarrage du service Pi")
    print(f"📍 URL: http://{HOST}:{PORT}")
    print(f"🔧 Mode debug: {DEBUG}")

    # Un seul worker: une seule boucle de calcul par base
    uvicorn.run(
        "piservice.app:create_app",
        host=HOST,
        port=PORT,
        reload=DEBUG,
        log_level="info" if not DEBUG else "debug",
        factory=True
    )


if __name__ == "__main__":
    main()
