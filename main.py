from app.main import app, install_shutdown_handlers
import os

if __name__ == "__main__":
    # Serves the health, latest-run and run-trigger endpoints. The hosting
    # environment may provide PORT; default to 8080 for local development.
    install_shutdown_handlers()
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port)
