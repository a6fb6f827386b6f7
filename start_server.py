#!/usr/bin/env python3
"""
Startup script for the Pattern Projector.
Writes default settings if needed and starts the server.
"""

import argparse
import json
import sys
from pathlib import Path

from pattern_projector.database import default_settings


def setup_environment(base_path: str = 'config') -> dict:
    """Create the config directories and default settings; return the settings."""
    config_dir = Path(base_path)
    (config_dir / 'state').mkdir(parents=True, exist_ok=True)
    Path('debug').mkdir(exist_ok=True)

    settings_file = config_dir / 'settings.json'
    if not settings_file.exists():
        with open(settings_file, 'w') as f:
            json.dump(default_settings(), f, indent=2)
        print(f"Created default settings: {settings_file}")

    with open(settings_file, 'r') as f:
        return json.load(f)


def main():
    """Main startup function."""
    parser = argparse.ArgumentParser(description='Pattern Projector Server')
    parser.add_argument('--host', default=None, help='Host to bind to (default from settings)')
    parser.add_argument('--port', type=int, default=None, help='Port to bind to (default from settings)')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')
    parser.add_argument('--setup-only', action='store_true', help='Only setup environment, don\'t start server')

    args = parser.parse_args()

    print("Pattern Projector - Starting up...")
    print("=" * 40)

    settings = setup_environment()

    if args.setup_only:
        print("Environment setup complete. Exiting.")
        return 0

    server_settings = settings.get('server', {})
    host = args.host or server_settings.get('host', '0.0.0.0')
    port = args.port or int(server_settings.get('port', 5670))
    debug = args.debug or bool(server_settings.get('debug', False))

    try:
        from pattern_projector.server import app, socketio

        print(f"Starting server on {host}:{port}")
        print(f"State: http://{host}:{port}/api/state")
        print(f"Calibration render: http://{host}:{port}/api/render/calibration.png")
        print("Press Ctrl+C to stop the server")
        print("-" * 40)

        socketio.run(app, host=host, port=port, debug=debug, use_reloader=False)

    except KeyboardInterrupt:
        print("\nServer stopped by user.")
        return 0
    except Exception as e:
        print(f"Error starting server: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
