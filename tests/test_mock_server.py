"""
Tests for MockAPI Mock Server

Tests the FastAPI-based mock server including:
- Server initialization and configuration
- Routing and scenario selection over HTTP
- /health and /info endpoints
- Structured 404 / 500 errors
- Request log emission
"""

import pytest
from fastapi.testclient import TestClient

from mockapi.server.log_sink import MemoryLogSink, RequestLogSink
from mockapi.server.models import MockApiConfig
from mockapi.server.server import MockMetrics, MockServer, MockServerConfig, create_mock_server


@pytest.fixture
def api_definition():
    """Users API with conditional and fixed scenarios."""
    return {
        'id': 'users-api',
        'name': 'Users API',
        'endpoints': [
            {
                'id': 'ep-list',
                'method': 'GET',
                'path': '/users',
                'defaultScenarioId': 'sc-list',
                'scenarios': [
                    {
                        'id': 'sc-list',
                        'name': 'List',
                        'statusCode': 200,
                        'responseBody': [{'id': 1, 'name': 'Ada'}]
                    },
                    {
                        'id': 'sc-down',
                        'name': 'Down',
                        'statusCode': 503,
                        'responseBody': {'error': 'maintenance'},
                        'conditions': [{'type': 'header', 'key': 'X-Scenario', 'operator': 'equals', 'value': 'down'}]
                    },
                    {
                        'id': 'sc-empty',
                        'name': 'Empty page',
                        'statusCode': 200,
                        'responseBody': [],
                        'conditions': [{'type': 'query', 'key': 'page', 'operator': 'equals', 'value': '99'}]
                    }
                ]
            },
            {
                'id': 'ep-get',
                'method': 'GET',
                'path': '/users/:id',
                'scenarios': [
                    {
                        'id': 'sc-user',
                        'name': 'User',
                        'responseHeaders': {'X-Source': 'mock', 'Content-Length': '999'},
                        'responseBody': {'id': 1}
                    }
                ]
            },
            {
                'id': 'ep-delete',
                'method': 'DELETE',
                'path': '/users/:id',
                'scenarios': [{'id': 'sc-deleted', 'name': 'Deleted', 'statusCode': 204}]
            },
            {
                'id': 'ep-text',
                'method': 'GET',
                'path': '/motd',
                'scenarios': [
                    {
                        'id': 'sc-text',
                        'name': 'Text',
                        'responseHeaders': {'Content-Type': 'text/plain'},
                        'responseBody': 'hello'
                    }
                ]
            },
            {
                'id': 'ep-empty',
                'method': 'POST',
                'path': '/broken',
                'scenarios': []
            }
        ]
    }


@pytest.fixture
def log_sink():
    return MemoryLogSink()


@pytest.fixture
def mock_server(api_definition, log_sink):
    """Mock server instance for testing."""
    return MockServer(
        MockApiConfig.from_dict(api_definition),
        config=MockServerConfig(port=3001),
        log_sink=log_sink
    )


@pytest.fixture
def client(mock_server):
    """FastAPI test client."""
    return TestClient(mock_server.app)


class FailingSink(RequestLogSink):
    """Sink whose transport is down."""

    async def emit(self, record):
        raise ConnectionError("management API unreachable")


class TestMockServerConfig:
    """Test MockServerConfig dataclass."""

    def test_default_config(self):
        """Test default configuration values."""
        config = MockServerConfig()

        assert config.host == '127.0.0.1'
        assert config.port == 3001
        assert config.cors_enabled is True


class TestMockMetrics:
    """Test MockMetrics dataclass."""

    def test_metrics_to_dict(self):
        """Test metrics serialization."""
        metrics = MockMetrics(total_requests=3, matched_requests=2, unmatched_requests=1)

        data = metrics.to_dict()

        assert data['total_requests'] == 3
        assert data['unmatched_requests'] == 1
        assert 'uptime_seconds' in data


class TestBuiltinEndpoints:
    """Test /health and /info."""

    def test_health(self, client):
        """Test the liveness probe body."""
        response = client.get('/health')

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'ok'
        assert data['apiId'] == 'users-api'
        assert data['apiName'] == 'Users API'
        assert data['port'] == 3001
        assert 'timestamp' in data

    def test_info(self, client):
        """Test the endpoint summary."""
        data = client.get('/info').json()

        assert data['api']['id'] == 'users-api'
        assert data['api']['endpointCount'] == 5
        assert data['endpoints'][0] == {
            'id': 'ep-list',
            'method': 'GET',
            'path': '/users',
            'description': '',
            'scenarioCount': 3
        }


class TestScenarioResponses:
    """Test request handling."""

    def test_default_scenario(self, client):
        """Test the default scenario body and JSON content type."""
        response = client.get('/users')

        assert response.status_code == 200
        assert response.json() == [{'id': 1, 'name': 'Ada'}]
        assert response.headers['content-type'].startswith('application/json')

    def test_header_conditional_scenario(self, client):
        """Test a header condition selects the failure scenario."""
        response = client.get('/users', headers={'x-scenario': 'down'})

        assert response.status_code == 503
        assert response.json() == {'error': 'maintenance'}

    def test_query_conditional_scenario(self, client):
        """Test a query condition."""
        response = client.get('/users?page=99')

        assert response.status_code == 200
        assert response.json() == []

    def test_trailing_slash(self, client):
        """Test '/users/' is served by '/users'."""
        assert client.get('/users/').status_code == 200

    def test_path_parameter_and_headers(self, client):
        """Test configured headers are sent, hop-by-hop ones dropped."""
        response = client.get('/users/42')

        assert response.status_code == 200
        assert response.headers['x-source'] == 'mock'
        assert response.headers['content-length'] != '999'
        assert response.json() == {'id': 1}

    def test_no_content(self, client):
        """Test 204 responses carry no body."""
        response = client.delete('/users/42')

        assert response.status_code == 204
        assert response.content == b''

    def test_text_body(self, client):
        """Test string bodies with a non-JSON content type are sent raw."""
        response = client.get('/motd')

        assert response.text == 'hello'
        assert response.headers['content-type'].startswith('text/plain')

    def test_head_uses_get_endpoint(self, client):
        """Test HEAD falls back to the GET endpoint without a body."""
        response = client.head('/users')

        assert response.status_code == 200
        assert response.content == b''


class TestErrorResponses:
    """Test structured errors."""

    def test_unknown_route(self, client, mock_server):
        """Test the 404 body lists the configured endpoints."""
        response = client.post('/nowhere')

        assert response.status_code == 404
        data = response.json()
        assert data['error'] == 'Endpoint not found'
        assert data['message'] == 'No endpoint configured for POST /nowhere'
        assert data['apiId'] == 'users-api'
        assert 'GET /users' in data['availableEndpoints']
        assert mock_server.metrics.unmatched_requests == 1

    def test_endpoint_without_scenarios(self, client):
        """Test a 500 when no scenario can be selected."""
        response = client.post('/broken')

        assert response.status_code == 500
        data = response.json()
        assert data['error'] == 'No matching scenario'
        assert data['endpointId'] == 'ep-empty'

    def test_matcher_failure(self, mock_server, client):
        """Test unexpected errors become a 500 instead of crashing the server."""
        mock_server.matcher.match = lambda endpoint, request: 1 / 0

        response = client.get('/users')

        assert response.status_code == 500
        assert response.json()['error'] == 'Internal server error'
        assert client.get('/health').status_code == 200


class TestRequestLogging:
    """Test request log emission."""

    def test_record_emitted(self, client, log_sink):
        """Test a matched request produces a full record."""
        client.post('/users', json={'name': 'x'})
        client.get('/users', headers={'X-Scenario': 'down'})

        assert len(log_sink.records) == 2
        unmatched, matched = log_sink.records
        assert unmatched.response_status == 404
        assert unmatched.endpoint_id is None
        assert unmatched.request_body == {'name': 'x'}
        assert matched.api_id == 'users-api'
        assert matched.endpoint_id == 'ep-list'
        assert matched.scenario_id == 'sc-down'
        assert matched.response_status == 503
        assert matched.response_body == {'error': 'maintenance'}
        assert matched.request_headers['x-scenario'] == 'down'
        assert matched.duration_ms >= 0

    def test_builtin_endpoints_not_logged(self, client, log_sink):
        """Test /health probes produce no records."""
        client.get('/health')

        assert log_sink.records == []

    def test_sink_failure_does_not_affect_response(self, api_definition):
        """Test a failing sink is counted and swallowed."""
        server = MockServer(MockApiConfig.from_dict(api_definition), log_sink=FailingSink())
        client = TestClient(server.app)

        response = client.get('/users')

        assert response.status_code == 200
        assert server.metrics.log_failures == 1


class TestCreateMockServer:
    """Test convenience constructor."""

    def test_create_from_definition(self, api_definition):
        """Test building a server from a raw definition."""
        server = create_mock_server(api_definition, port=4100, cors_enabled=False)

        assert server.config.port == 4100
        assert server.api.id == 'users-api'
        assert 'GET /users' in server.route_summary()

    def test_uvicorn_server_built_without_starting(self, api_definition):
        """Test the embedded uvicorn server uses the configured port."""
        server = create_mock_server(api_definition, port=4101)

        uvicorn_server = server.build_uvicorn_server()

        assert uvicorn_server.config.port == 4101
        assert uvicorn_server.started is False


class TestCatalogScenarios:
    """Test a small product/order API end to end over HTTP."""

    @pytest.fixture
    def catalog_client(self):
        server = create_mock_server({
            'id': 'shop-api',
            'name': 'Shop API',
            'endpoints': [
                {
                    'id': 'ep-products',
                    'method': 'GET',
                    'path': '/products',
                    'scenarios': [
                        {'id': 'sc-products', 'name': 'Products', 'isDefault': True,
                         'statusCode': 200, 'responseBody': {'items': []}}
                    ]
                },
                {
                    'id': 'ep-orders',
                    'method': 'POST',
                    'path': '/orders',
                    'scenarios': [
                        {'id': 'sc-created', 'name': 'Created', 'isDefault': True, 'statusCode': 201},
                        {
                            'id': 'sc-invalid',
                            'name': 'Invalid',
                            'statusCode': 422,
                            'conditions': [{'type': 'header', 'key': 'x-force-error', 'operator': 'exists'}]
                        }
                    ]
                }
            ]
        }, port=3001)
        return TestClient(server.app)

    def test_default_scenario_served(self, catalog_client):
        """Test the default scenario answers a plain request."""
        response = catalog_client.get('/products')

        assert response.status_code == 200
        assert response.json() == {'items': []}

    def test_header_selects_error_scenario(self, catalog_client):
        """Test a present header switches to the conditional scenario."""
        forced = catalog_client.post('/orders', headers={'x-force-error': 'yes'})
        normal = catalog_client.post('/orders')

        assert forced.status_code == 422
        assert normal.status_code == 201

    def test_unknown_route_reports_method_and_path(self, catalog_client):
        """Test the 404 body echoes the unmatched method and path."""
        response = catalog_client.delete('/unknown')

        assert response.status_code == 404
        data = response.json()
        assert data['method'] == 'DELETE'
        assert data['path'] == '/unknown'
