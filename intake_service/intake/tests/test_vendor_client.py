"""
Unit tests for the LeadProsper client.
"""
from unittest.mock import patch

import httpx
import pytest

from intake.services.vendor_client import LeadProsperClient

PAYLOAD = {'lp_campaign_id': 22990, 'phone': '(555) 123-4567'}


@pytest.fixture
def client():
    return LeadProsperClient(
        url='https://vendor.test/direct_post',
        token='secret-token',
        timeout=1,
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
        total_timeout=30,
    )


def accepted(lead_id='lp-123'):
    return httpx.Response(200, json={'status': 'ACCEPTED', 'lead_id': lead_id})


class TestSubmitSuccess:
    """Tests for successful delivery."""

    def test_accepted(self, client):
        with patch('intake.services.vendor_client.httpx.post', return_value=accepted()) as mock_post:
            result = client.submit(PAYLOAD)

        assert result.success is True
        assert result.lead_id == 'lp-123'
        assert result.attempts == 1
        _, kwargs = mock_post.call_args
        assert kwargs['json'] == PAYLOAD
        assert kwargs['headers']['Authorization'] == 'Bearer secret-token'

    def test_no_token_sends_no_auth_header(self, client):
        client.token = ''
        with patch('intake.services.vendor_client.httpx.post', return_value=accepted()) as mock_post:
            client.submit(PAYLOAD)
        assert 'Authorization' not in mock_post.call_args.kwargs['headers']

    def test_transient_error_then_success(self, client):
        responses = [httpx.Response(503, text='unavailable'), accepted('lp-9')]
        records = []
        with patch('intake.services.vendor_client.httpx.post', side_effect=responses):
            result = client.submit(PAYLOAD, on_attempt=records.append)

        assert result.success is True
        assert result.attempts == 2
        assert [(record.attempt_no, record.status_code, record.success) for record in records] == [
            (1, 503, False),
            (2, 200, True),
        ]


class TestSubmitFailure:
    """Tests for failed delivery."""

    def test_server_errors_exhaust_retries(self, client):
        with patch('intake.services.vendor_client.httpx.post',
                   return_value=httpx.Response(502, text='bad gateway')) as mock_post:
            result = client.submit(PAYLOAD)

        assert result.success is False
        assert result.retryable is True
        assert result.status_code == 502
        assert result.attempts == 3
        assert mock_post.call_count == 3

    def test_timeouts_are_retried(self, client):
        records = []
        with patch('intake.services.vendor_client.httpx.post', side_effect=httpx.ReadTimeout('slow')):
            result = client.submit(PAYLOAD, on_attempt=records.append)

        assert result.success is False
        assert result.retryable is True
        assert result.error.startswith('Timeout')
        assert len(records) == 3
        assert records[0].status_code is None

    def test_connection_error(self, client):
        with patch('intake.services.vendor_client.httpx.post', side_effect=httpx.ConnectError('refused')):
            result = client.submit(PAYLOAD)
        assert result.error.startswith('Network error')
        assert result.retryable is True

    def test_client_error_is_not_retried(self, client):
        response = httpx.Response(400, json={'status': 'ERROR', 'message': 'bad campaign'})
        with patch('intake.services.vendor_client.httpx.post', return_value=response) as mock_post:
            result = client.submit(PAYLOAD)

        assert result.success is False
        assert result.retryable is False
        assert result.error == 'Client error: 400'
        assert result.response['message'] == 'bad campaign'
        assert mock_post.call_count == 1

    def test_rejection_in_success_response(self, client):
        response = httpx.Response(200, json={'status': 'ERROR', 'message': 'duplicate lead'})
        with patch('intake.services.vendor_client.httpx.post', return_value=response):
            result = client.submit(PAYLOAD)

        assert result.success is False
        assert result.retryable is False
        assert result.error == 'Vendor rejected lead: duplicate lead'

    def test_non_json_body(self, client):
        with patch('intake.services.vendor_client.httpx.post', return_value=httpx.Response(403, text='Forbidden')):
            result = client.submit(PAYLOAD)
        assert result.response == {'raw': 'Forbidden'}


class TestTotalTimeout:
    """Tests for the overall time budget of one submission."""

    def test_request_timeout_is_capped_by_remaining_budget(self, client):
        client.timeout = 30
        client.total_timeout = 5
        with patch('intake.services.vendor_client.httpx.post', return_value=accepted()) as mock_post:
            client.submit(PAYLOAD)

        timeout = mock_post.call_args.kwargs['timeout']
        assert 0 < timeout <= 5

    def test_short_request_timeout_is_kept(self, client):
        with patch('intake.services.vendor_client.httpx.post', return_value=accepted()) as mock_post:
            client.submit(PAYLOAD)
        assert mock_post.call_args.kwargs['timeout'] == 1

    def test_attempt_timeout_near_deadline(self, client):
        client.timeout = 30
        with patch('intake.services.vendor_client.time.monotonic', return_value=98.5):
            assert client._attempt_timeout(100.0) == 1.5
            assert client._attempt_timeout(90.0) == 0.0

    def test_exhausted_budget_sends_nothing(self, client):
        client.total_timeout = 0
        with patch('intake.services.vendor_client.httpx.post') as mock_post:
            result = client.submit(PAYLOAD)

        mock_post.assert_not_called()
        assert result.success is False
        assert result.retryable is True
        assert result.attempts == 0
        assert 'Total timeout' in result.error
