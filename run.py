#!/usr/bin/env python3
"""
Entry point for the Arena registration service.

Usage:
    python run.py                    # Run the service

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    DATABASE_URL: SQLAlchemy database URL
    REDIS_URL: Redis URL for the availability feed (FEED_BACKEND=redis)
"""
import os


def run_service():
    """Run the registration service."""
    from arena.app import create_app

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print(f"Starting Arena registration service on port {port}...")
    # Threaded so availability streams do not block registrations
    app.run(host='0.0.0.0', port=port, debug=debug, threaded=True)


if __name__ == '__main__':
    run_service()
