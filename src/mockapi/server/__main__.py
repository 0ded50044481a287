"""
Mock server process entry point.

Started by the supervisor as ``python -m mockapi.server`` with:
    PORT                 Port to bind
    API_ID               Mock API identifier
    API_CONFIG           Mock API definition (JSON)
    MANAGEMENT_API_URL   Management API base URL for request logs (optional)
    MOCKAPI_HOST         Bind address (default 127.0.0.1)
    MOCKAPI_LOG_LEVEL    Log level (default info)
    MOCKAPI_CORS         Permissive CORS headers, true or false (default true)
"""

import logging
import os
import sys

from .log_sink import HttpLogSink, NullLogSink
from .models import MockApiConfig
from .server import MockServer, MockServerConfig


def main():
    """Run one mock server from environment variables."""
    log_level = os.environ.get('MOCKAPI_LOG_LEVEL', 'info').lower()
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        stream=sys.stdout
    )
    logger = logging.getLogger("mockapi.server")

    port = os.environ.get('PORT')
    api_config_json = os.environ.get('API_CONFIG')
    if not port or not api_config_json:
        logger.error("Missing required environment variables: PORT, API_CONFIG")
        sys.exit(1)

    try:
        api = MockApiConfig.from_json(api_config_json)
    except ValueError as e:
        logger.error(f"Invalid API_CONFIG: {e}")
        sys.exit(1)

    api_id = os.environ.get('API_ID')
    if api_id and api_id != api.id:
        logger.warning(f"API_ID {api_id} does not match configured API {api.id}")

    management_url = os.environ.get('MANAGEMENT_API_URL')
    log_sink = HttpLogSink(management_url) if management_url else NullLogSink()

    config = MockServerConfig(
        host=os.environ.get('MOCKAPI_HOST', '127.0.0.1'),
        port=int(port),
        log_level=log_level,
        cors_enabled=os.environ.get('MOCKAPI_CORS', 'true').lower() not in ('false', '0', 'no', 'off')
    )
    MockServer(api, config=config, log_sink=log_sink).start()


if __name__ == '__main__':
    main()
