"""
Unit tests for the HTTP API (burrow/routes/, burrow/auth.py).
"""

from unittest.mock import patch

import pytest

from burrow import create_app
from burrow.auth import verify_token


class TestAuth:
    """Test API token authentication."""

    def test_health_is_public(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_missing_token(self, client):
        response = client.get('/api/services')
        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = client.get('/api/services', headers={'X-API-Token': 'nope'})
        assert response.status_code == 401

    def test_token_not_configured(self, app, client, auth_headers):
        app.config['API_TOKEN'] = None

        response = client.get('/api/services', headers=auth_headers)

        assert response.status_code == 503

    def test_verify_token(self):
        assert verify_token('abc', 'abc') is True
        assert verify_token('abc', 'abd') is False
        assert verify_token('', '') is False


class TestServiceRoutes:
    """Test service listing, backup, restore and cleanup endpoints."""

    def test_list_services(self, client, auth_headers):
        response = client.get('/api/services', headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert [s['name'] for s in data] == ['app']
        assert data[0]['retain_backups'] == 7
        assert data[0]['exclude'] == ['**/cache/**']

    def test_backup_runs_inline_without_scheduler(self, client, auth_headers):
        response = client.post('/api/services/app/backup', headers=auth_headers)

        assert response.status_code == 201
        data = response.get_json()
        assert data['artifact'].startswith('app-')
        assert data['backends'] == ['primary', 'secondary']

    def test_backup_unknown_service(self, client, auth_headers):
        """Test that ConfigError maps to 404."""
        response = client.post('/api/services/ghost/backup', headers=auth_headers)

        assert response.status_code == 404
        assert 'Service not found' in response.get_json()['error']

    def test_list_backups(self, client, auth_headers):
        client.post('/api/services/app/backup', headers=auth_headers)

        response = client.get('/api/services/app/backups', headers=auth_headers)

        assert response.status_code == 200
        backends = response.get_json()['backends']
        assert len(backends['primary']) == 1
        assert backends['primary'][0]['mod_time'].endswith('UTC')

    def test_restore(self, client, auth_headers, service_tree):
        artifact = client.post('/api/services/app/backup', headers=auth_headers).get_json()['artifact']
        (service_tree / 'config.yml').write_text('changed')

        response = client.post(
            '/api/services/app/restore',
            json={'artifact': artifact},
            headers=auth_headers
        )

        assert response.status_code == 200
        assert (service_tree / 'config.yml').read_text() == 'setting: true\n'

    def test_restore_requires_artifact(self, client, auth_headers):
        response = client.post('/api/services/app/restore', json={}, headers=auth_headers)
        assert response.status_code == 400

    def test_restore_missing_artifact(self, client, auth_headers):
        """Test that storage failures map to 500."""
        response = client.post(
            '/api/services/app/restore',
            json={'artifact': 'app-2000-01-01T00-00-00Z.enc'},
            headers=auth_headers
        )

        assert response.status_code == 500
        assert response.get_json()['type'] == 'StorageError'

    def test_restore_wrong_key(self, client, auth_headers, burrow_runner):
        """Test that DecryptionError maps to 422."""
        import os
        from burrow.utils.crypto import CryptoManager, EncryptionKey

        artifact = client.post('/api/services/app/backup', headers=auth_headers).get_json()['artifact']
        burrow_runner.executor.crypto = CryptoManager(EncryptionKey(os.urandom(32), os.urandom(16)))

        response = client.post(
            '/api/services/app/restore',
            json={'artifact': artifact},
            headers=auth_headers
        )

        assert response.status_code == 422

    def test_cleanup(self, client, auth_headers):
        response = client.post('/api/cleanup', json={'service': 'app'}, headers=auth_headers)

        assert response.status_code == 200
        assert response.get_json()['deleted'] == {'app': {'primary': 0, 'secondary': 0}}

    def test_cleanup_unknown_service(self, client, auth_headers):
        response = client.post('/api/cleanup', json={'service': 'ghost'}, headers=auth_headers)
        assert response.status_code == 404


class TestHistoryRoutes:
    """Test run history endpoint."""

    def test_history_records_runs(self, client, auth_headers):
        client.post('/api/services/app/backup', headers=auth_headers)
        client.post('/api/services/ghost/backup', headers=auth_headers)

        response = client.get('/api/history', headers=auth_headers)

        assert response.status_code == 200
        records = response.get_json()['records']
        assert [r['status'] for r in records] == ['failed', 'success']
        assert records[1]['artifact'].startswith('app-')

    def test_history_status_filter(self, client, auth_headers):
        client.post('/api/services/app/backup', headers=auth_headers)

        response = client.get('/api/history?status=failed', headers=auth_headers)

        assert response.get_json()['records'] == []

    def test_history_invalid_status(self, client, auth_headers):
        response = client.get('/api/history?status=bogus', headers=auth_headers)
        assert response.status_code == 400


class TestAppFactory:
    """Test process-level setup in create_app."""

    def test_runner_closed_at_exit_without_scheduler(self, burrow_runner):
        """Test that HTTP-only processes still close their backend sessions."""
        with patch('burrow.atexit.register') as register:
            create_app('testing', runner=burrow_runner)

        register.assert_called_once_with(burrow_runner.close)
