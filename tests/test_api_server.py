"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API using the Flask test client.
"""

import pytest
import os
import sys
import base64

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from caveboy import api_server
from caveboy.model_store import get_network_metadata


TRAINING_BODY = {
    'patterns': [[1.0, -1.0], [-1.0, 1.0]],
    'codes': [0, 1],
    'names': ['left', 'right'],
    'learning_rate': 0.2,
    'max_epochs': 2000,
    'error_threshold': 0.05
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client with an empty state and a temporary model store."""
    api_server.app.config['TESTING'] = True
    api_server.app.config['MODEL_DIR'] = str(tmp_path / "models")
    api_server.active_networks.clear()
    api_server.training_jobs.clear()
    # Run background training synchronously
    monkeypatch.setattr(api_server.socketio, 'start_background_task',
                        lambda target, *args, **kwargs: target(*args, **kwargs))
    with api_server.app.test_client() as client:
        yield client


def create(client, sizes=(2, 4, 2)):
    response = client.post('/api/networks', json={'sizes': list(sizes), 'seed': 0})
    assert response.status_code == 201
    return response.get_json()['network_id']


@pytest.mark.unit
class TestNetworkEndpoints:
    """Test creating, listing and deleting networks."""

    def test_status(self, client):
        """Test the status endpoint on an empty server."""
        response = client.get('/api/status')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'online', 'active_networks': 0, 'training_jobs': 0}

    def test_create_network(self, client):
        """Test that a network is created with the requested sizes."""
        response = client.post('/api/networks', json={'sizes': [4, 6, 3]})
        data = response.get_json()
        assert response.status_code == 201
        assert data['sizes'] == [4, 6, 3]
        assert data['network_id'] in api_server.active_networks

    @pytest.mark.parametrize("sizes", [None, [2, 3], [2, 0, 2], [2, 'x', 2], [2, True, 2]])
    def test_create_invalid_sizes(self, client, sizes):
        """Test that malformed sizes are rejected."""
        response = client.post('/api/networks', json={'sizes': sizes})
        assert response.status_code == 400

    def test_list_networks(self, client):
        """Test that created networks are listed."""
        network_id = create(client)
        networks = client.get('/api/networks').get_json()['networks']
        assert [n['network_id'] for n in networks] == [network_id]
        assert networks[0]['status'] == 'in_memory'

    def test_delete_network(self, client):
        """Test deleting a network and deleting it twice."""
        network_id = create(client)
        assert client.delete(f'/api/networks/{network_id}').status_code == 200
        assert client.delete(f'/api/networks/{network_id}').status_code == 404


@pytest.mark.integration
class TestTrainingEndpoints:
    """Test training, classification and plots."""

    def test_train_unknown_network(self, client):
        """Test that training a missing network is a 404."""
        assert client.post('/api/networks/missing/train', json=TRAINING_BODY).status_code == 404

    @pytest.mark.parametrize("override", [
        {'learning_rate': 0},
        {'max_epochs': 0},
        {'workers': 0},
        {'error_threshold': -1},
        {'patterns': []},
        {'codes': [0, 5]},
        {'patterns': [[1.0, -1.0, 0.0], [-1.0, 1.0, 0.0]]},
    ])
    def test_train_rejects_bad_requests(self, client, override):
        """Test that bad parameters or data are rejected before training."""
        network_id = create(client)
        body = dict(TRAINING_BODY, **override)
        response = client.post(f'/api/networks/{network_id}/train', json=body)
        assert response.status_code == 400
        assert not api_server.training_jobs

    @pytest.mark.parametrize("workers", [1, 2])
    def test_train_network(self, client, workers):
        """Test a complete training job and the stored result."""
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/train',
                               json=dict(TRAINING_BODY, workers=workers))
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        status = client.get(f'/api/training/{job_id}').get_json()
        assert status['status'] == 'completed'
        assert status['progress'] == 100

        info = api_server.active_networks[network_id]
        assert info['trained'] is True
        assert info['names'] == ['left', 'right']
        assert len(info['errors']) == info['epochs']

        metadata = get_network_metadata(network_id, api_server.app.config['MODEL_DIR'])
        assert metadata['trained'] is True
        assert metadata['epochs'] == info['epochs']

    def test_unknown_job(self, client):
        """Test that an unknown job id is a 404."""
        assert client.get('/api/training/nope').status_code == 404

    def test_classify(self, client):
        """Test classification with a trained network."""
        network_id = create(client)
        client.post(f'/api/networks/{network_id}/train', json=TRAINING_BODY)

        response = client.post(f'/api/networks/{network_id}/classify', json={
            'patterns': [[1.0, -1.0], [-1.0, 1.0]],
            'codes': [0, 1],
            'radius': 0.5
        })
        data = response.get_json()
        assert response.status_code == 200
        assert [r['code'] for r in data['results']] == [0, 1]
        assert [r['label'] for r in data['results']] == ['left', 'right']
        assert data['accuracy'] == 1.0
        assert len(data['results'][0]['output']) == 2

    def test_classify_wrong_length(self, client):
        """Test that patterns must match the input layer."""
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'patterns': [[1.0, 2.0, 3.0]]})
        assert response.status_code == 400

    @pytest.mark.parametrize("codes", [['a', 'b'], [0, 1.5], [True, 0], [0], 'ab'])
    def test_classify_bad_codes(self, client, codes):
        """Test that expected codes must be one integer per pattern."""
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/classify', json={
            'patterns': [[1.0, -1.0], [-1.0, 1.0]],
            'codes': codes
        })
        assert response.status_code == 400
        assert 'codes' in response.get_json()['error']

    def test_classify_restores_saved_network(self, client):
        """Test that a network only in the store is loaded on demand."""
        network_id = create(client)
        client.post(f'/api/networks/{network_id}/train', json=TRAINING_BODY)
        api_server.active_networks.clear()

        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'patterns': [[1.0, -1.0]], 'radius': 0.5})
        assert response.status_code == 200
        assert response.get_json()['results'][0]['label'] == 'left'

    def test_error_plot(self, client):
        """Test that the error curve comes back as a PNG."""
        network_id = create(client)
        assert client.get(f'/api/networks/{network_id}/error_plot').status_code == 404

        client.post(f'/api/networks/{network_id}/train', json=TRAINING_BODY)
        response = client.get(f'/api/networks/{network_id}/error_plot')
        assert response.status_code == 200
        image = base64.b64decode(response.get_json()['image_data'])
        assert image.startswith(b'\x89PNG')
