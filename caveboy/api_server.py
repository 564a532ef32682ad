"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for perceptron training.

This module provides endpoints for:
- Creating and managing networks
- Training networks on posted patterns with real-time progress updates
  via WebSockets, on one rank or on a local group of ranks
- Classifying patterns with the radius decision rule
- Persisting networks to/from the SQLite model store

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- Matplotlib for the error curve images
"""

import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from caveboy.comm import run_local_group
from caveboy.config import (
    DEFAULT_LEARNING_RATE,
    DEFAULT_MAX_EPOCHS,
    DEFAULT_RADIUS,
    configure_logging,
    is_production,
    model_dir,
    server_port
)
from caveboy.distributed import parallel_fit
from caveboy.errors import CaveboyError
from caveboy.evaluation import UNDECIDABLE, ClassificationReport, classify
from caveboy.model_store import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network
)
from caveboy.network import Network
from caveboy.patterns import PatternSet
from caveboy.training import check_compatible, fit

logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
app.config['MODEL_DIR'] = model_dir()
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production(),
    engineio_logger=not is_production(),
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}


def _network_entry(
    net: Network,
    names: Optional[List[str]] = None,
    trained: bool = False,
    error: Optional[float] = None,
    epochs: Optional[int] = None
) -> Dict[str, Any]:
    return {
        'network': net,
        'sizes': net.sizes,
        'names': list(names) if names else None,
        'trained': trained,
        'error': error,
        'epochs': epochs,
        'errors': []
    }


def _describe(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'network_id': network_id,
        'sizes': info['sizes'],
        'names': info['names'],
        'trained': info['trained'],
        'error': info['error'],
        'epochs': info['epochs']
    }


def get_active_network(network_id: str) -> Optional[Dict[str, Any]]:
    """
    Look a network up in memory, falling back to the model store.

    A network found in the store is kept in memory from then on.
    """
    if network_id in active_networks:
        return active_networks[network_id]

    stored = load_network(network_id, model_dir=app.config['MODEL_DIR'])
    if stored is None:
        return None

    active_networks[network_id] = _network_entry(
        stored.network,
        names=stored.info.names if stored.info else None,
        trained=stored.metadata['trained'],
        error=stored.metadata['error'],
        epochs=stored.metadata['epochs']
    )
    logger.info(f"Restored network {network_id} from the model store")
    return active_networks[network_id]


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the model store into memory.

    Called at startup to restore networks saved before the server
    was restarted.
    """
    saved_networks = list_saved_networks(model_dir=app.config['MODEL_DIR'])

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        if get_active_network(net_info['network_id']) is not None:
            loaded_count += 1
        else:
            logger.warning(f"Failed to load network {net_info['network_id']}")

    logger.info(f"Reloaded {loaded_count} network(s) from the model store")


# ============================================================================
# REQUEST PARSING
# ============================================================================

def _positive_int_list(value: Any, length: int) -> bool:
    return (
        isinstance(value, list) and len(value) == length
        and all(isinstance(v, int) and not isinstance(v, bool) and v > 0 for v in value)
    )


def _int_list(value: Any, length: int) -> bool:
    return (
        isinstance(value, list) and len(value) == length
        and all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    )


def parse_pattern_set(data: Dict[str, Any]) -> PatternSet:
    """
    Build a pattern set from a request body.

    Body keys: ``patterns`` (list of equal length number lists),
    ``codes`` (class code per pattern) and optional ``names``.

    Raises:
        CaveboyError: If the lists are malformed or inconsistent
        ValueError: If a value is not a number
    """
    patterns = data.get('patterns')
    codes = data.get('codes')
    if not isinstance(patterns, list) or not patterns:
        raise ValueError('patterns must be a non-empty list of number lists')
    if not isinstance(codes, list):
        raise ValueError('codes must be a list of class codes')
    return PatternSet.from_arrays(patterns, codes, data.get('names'))


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """
    Return server status and statistics.

    Returns counts of networks in memory and training jobs that are
    currently in progress (status='pending' or 'training').
    """
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network with random weights.

    Request body:
        {'sizes': [n_in, n_hidden, n_out], 'seed': 42}  # seed is optional

    Returns:
        JSON with network_id, sizes, and status
    """
    data = request.get_json(silent=True) or {}
    sizes = data.get('sizes')
    seed = data.get('seed')

    if not _positive_int_list(sizes, 3):
        logger.warning(f"Invalid sizes requested: {sizes}")
        return jsonify({
            'error': 'Invalid sizes. Must be three positive integers [n_in, n_hidden, n_out].'
        }), 400
    if seed is not None and not isinstance(seed, int):
        return jsonify({'error': 'seed must be an integer'}), 400

    network_id = str(uuid.uuid4())
    try:
        net = Network(*sizes, seed=seed)
    except CaveboyError as e:
        logger.warning(f"Couldn't create network with sizes {sizes}: {e}")
        return jsonify({'error': f'Failed to create network: {e}'}), 400

    active_networks[network_id] = _network_entry(net)
    logger.info(f"Created network {network_id} with sizes {sizes}")

    return jsonify({
        'network_id': network_id,
        'sizes': net.sizes,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    in_memory = []
    for nid, info in active_networks.items():
        entry = _describe(nid, info)
        entry['status'] = 'in_memory'
        in_memory.append(entry)

    saved_only = []
    for net in list_saved_networks(model_dir=app.config['MODEL_DIR']):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the model store."""
    deleted_from_memory = False
    if network_id in active_networks:
        del active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, model_dir=app.config['MODEL_DIR'])

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'patterns': [[...], ...],
            'codes': [0, 1, ...],
            'names': ['a', 'b'],          # optional
            'learning_rate': 0.001,       # optional
            'max_epochs': 2000,           # optional
            'error_threshold': 0.0,       # optional
            'workers': 1                  # optional
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    info = get_active_network(network_id)
    if info is None:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)
    max_epochs = data.get('max_epochs', DEFAULT_MAX_EPOCHS)
    error_threshold = data.get('error_threshold', 0.0)
    workers = data.get('workers', 1)

    # Validate training parameters
    if not isinstance(max_epochs, int) or max_epochs < 1:
        return jsonify({'error': 'max_epochs must be a positive integer'}), 400
    if not isinstance(learning_rate, (int, float)) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if not isinstance(error_threshold, (int, float)) or error_threshold < 0:
        return jsonify({'error': 'error_threshold must be a non-negative number'}), 400
    if not isinstance(workers, int) or workers < 1:
        return jsonify({'error': 'workers must be a positive integer'}), 400

    try:
        pattern_set = parse_pattern_set(data)
        check_compatible(info['network'], pattern_set)
    except (CaveboyError, ValueError, TypeError) as e:
        logger.warning(f"Rejected training data for network {network_id}: {e}")
        return jsonify({'error': str(e)}), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'max_epochs': max_epochs,
        'workers': workers
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"patterns={len(pattern_set)}, lr={learning_rate}, max_epochs={max_epochs}, "
        f"workers={workers}"
    )

    # Run training in background so we can return immediately
    socketio.start_background_task(
        train_network_task,
        network_id, job_id, pattern_set, learning_rate, max_epochs,
        error_threshold, workers, app.config['MODEL_DIR']
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    pattern_set: PatternSet,
    learning_rate: float,
    max_epochs: int,
    error_threshold: float,
    workers: int,
    store_dir: str
) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket as training progresses.
    """
    info = active_networks[network_id]
    net = info['network']
    info['errors'] = []

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress
        training_jobs[job_id]['error'] = data['error']
        info['errors'].append(data['error'])

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'error': data['error'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id} on {workers} rank(s)")

        if workers > 1:
            results = run_local_group(
                workers,
                parallel_fit,
                learning_rate,
                error_threshold,
                max_epochs,
                root_kwargs={
                    'network': net,
                    'pattern_set': pattern_set,
                    'callback': on_epoch_complete
                }
            )
            result = results[0]
        else:
            result = fit(
                net,
                pattern_set,
                learning_rate,
                error_threshold,
                max_epochs,
                callback=on_epoch_complete,
                yield_func=lambda: gevent.sleep(0)
            )

        info['trained'] = True
        info['error'] = result.error
        info['epochs'] = result.epochs
        info['names'] = list(pattern_set.names)

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['progress'] = 100
        training_jobs[job_id]['error'] = result.error
        training_jobs[job_id]['epochs'] = result.epochs
        training_jobs[job_id]['converged'] = result.converged

        save_network(
            net, network_id, pattern_set.training_info(), model_dir=store_dir,
            trained=True, error=result.error, epochs=result.epochs
        )

        logger.info(
            f"Training completed for job {job_id}: error {result.error:.6f} "
            f"after {result.epochs} epoch(s)"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'error': float(result.error),
            'epochs': result.epochs,
            'converged': result.converged,
            'progress': 100
        })
        gevent.sleep(0)

    except CaveboyError as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/classify', methods=['POST'])
def classify_patterns(network_id: str):
    """
    Classify patterns with the radius decision rule.

    Request body:
        {'patterns': [[...], ...], 'radius': 0.1, 'codes': [...]}
        # radius and codes are optional; codes enable accuracy stats

    Returns:
        JSON with one entry per pattern (code, label, raw output) and
        a summary
    """
    info = get_active_network(network_id)
    if info is None:
        logger.warning(f"Classification requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    radius = data.get('radius', DEFAULT_RADIUS)
    if not isinstance(radius, (int, float)) or not 0 < radius < 2:
        return jsonify({'error': 'radius must be a number in (0, 2)'}), 400

    net = info['network']
    try:
        inputs = np.asarray(data.get('patterns'), dtype=float)
    except (TypeError, ValueError):
        return jsonify({'error': 'patterns must be a list of number lists'}), 400
    if inputs.ndim != 2 or inputs.shape[0] == 0 or inputs.shape[1] != net.n_in:
        return jsonify({
            'error': f'patterns must be a non-empty list of {net.n_in} element lists'
        }), 400

    expected = data.get('codes')
    if expected is not None and not _int_list(expected, len(inputs)):
        return jsonify({'error': 'codes must hold one integer per pattern'}), 400

    predicted = classify(net, inputs, radius)
    names = info['names'] or [str(c) for c in range(net.n_out)]
    report = ClassificationReport(
        predicted, names, np.asarray(expected, dtype=np.int64) if expected is not None else None
    )

    results = []
    for i, code in enumerate(predicted):
        code = int(code)
        results.append({
            'index': i,
            'code': code,
            'label': report.label(code) if code != UNDECIDABLE else None,
            'output': array_to_float_list(net.feedforward(inputs[i]))
        })

    logger.info(f"Classified {report.total} pattern(s) with network {network_id}: {report.summary()}")

    return jsonify({
        'network_id': network_id,
        'radius': radius,
        'results': results,
        'recognized': report.recognized,
        'undecidable': report.undecidable,
        'accuracy': report.accuracy,
        'summary': report.summary()
    }), 200


@app.route('/api/networks/<network_id>/error_plot', methods=['GET'])
def get_error_plot(network_id: str):
    """Return the epoch error curve of the last training run as a PNG."""
    info = get_active_network(network_id)
    if info is None:
        return jsonify({'error': 'Network not found'}), 404
    if not info['errors']:
        return jsonify({'error': 'No training errors recorded for this network'}), 404

    return jsonify({
        'network_id': network_id,
        'epochs': len(info['errors']),
        'image_data': create_error_plot(info['errors'], info['sizes'])
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def create_error_plot(errors: List[float], sizes: List[int]) -> str:
    """
    Create a base64-encoded PNG of the training error curve.

    Args:
        errors: Mean square error of each epoch
        sizes: Network layer sizes, shown in the title

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(5, 3))
    plt.plot(range(len(errors)), errors)
    plt.xlabel('epoch')
    plt.ylabel('error')
    plt.title(f"Network {sizes}")

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


# ============================================================================
# SERVER STARTUP
# ============================================================================

def main() -> None:
    configure_logging()
    reload_saved_networks()

    port = server_port()
    if is_production():
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production(),
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        raise


if __name__ == '__main__':
    main()
