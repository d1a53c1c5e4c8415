"""Local development server for the frame analysis Cloud Function."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from flask import Flask, request

# Ensure project root is on sys.path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.functions.frame_analysis.functions.main import (
    frame_analysis_handler,
    health_check_handler,
)

app = Flask(__name__)


@app.route("/", methods=["POST", "OPTIONS"])
def local_handler():
    """Proxy HTTP requests to the Cloud Function handler."""
    return frame_analysis_handler(request)


@app.route("/health", methods=["GET"])
def health():
    return health_check_handler(request)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    print(f"Starting local frame analysis server on http://localhost:{port}")
    print(
        f"Test with: curl -X POST http://localhost:{port} -H 'Content-Type: application/json' "
        "-d '{\"frames\": [{\"id\": \"f-1\", \"image_data\": \"https://example.com/frame.png\"}]}'"
    )
    print("")
    app.run(host="0.0.0.0", port=port, debug=True)
