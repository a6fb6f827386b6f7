"""
Flask server with WebSocket support for the pattern projector.
Hosts the calibration state and relays pointer/keyboard input from the
control view to the calibration and measurement controllers.
"""

from flask import Flask, Response, jsonify, request
from flask_socketio import SocketIO, emit, join_room, leave_room
import os
import sys
import time
from typing import Any, Dict, Optional
from enum import Enum
import logging

from pattern_projector.calibration import MAX_POINTS, Calibrator
from pattern_projector.calibration_controller import (
    MOUSE_FILTER,
    TOUCH_FILTER,
    CalibrationCanvasController,
)
from pattern_projector.color_transition import ColorTransition
from pattern_projector.database import LOCAL_TRANSFORM_KEY, POINTS_KEY, FileBasedDB
from pattern_projector.display_settings import DisplaySettings
from pattern_projector.drawing import CanvasRenderer, CanvasState
from pattern_projector.geometry import (
    as_matrix,
    is_finite_matrix,
    is_flipped,
    matrix_to_list,
    point_to_dict,
    to_matrix3d,
    to_point,
)
from pattern_projector.local_transform import LocalTransform, parse_local_transform_action
from pattern_projector.measurement import MeasurementController
from pattern_projector.units import Unit, parse_unit


# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = 'pattern_projector_secret_key'

# Initialize SocketIO
socketio = SocketIO(app, cors_allowed_origins="*")

# Configure logging to both file and console
os.makedirs('debug', exist_ok=True)
log_format = '%(asctime)s %(levelname)s %(name)s %(message)s'

root_logger = logging.getLogger()
root_logger.setLevel(logging.INFO)
for handler in root_logger.handlers[:]:
    root_logger.removeHandler(handler)

file_handler = logging.FileHandler(
    filename=os.path.join('debug', 'pattern_projector.log'),
    mode='a'
)
file_handler.setLevel(logging.INFO)
file_handler.setFormatter(logging.Formatter(log_format))

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(logging.Formatter(log_format))

root_logger.addHandler(file_handler)
root_logger.addHandler(console_handler)

# Werkzeug request logs go to the same place
flask_logger = logging.getLogger('werkzeug')
flask_logger.setLevel(logging.INFO)
for handler in flask_logger.handlers[:]:
    flask_logger.removeHandler(handler)
flask_logger.addHandler(file_handler)
flask_logger.addHandler(console_handler)

logger = logging.getLogger(__name__)

ROOMS = ('control', 'projector')
PROJECTOR_RESOLUTION_KEY = 'projector_resolution'


class OperationMode(str, Enum):
    CALIBRATE = 'calibrate'
    PROJECT = 'project'


def _parse_operation_mode(value: Any) -> Optional[OperationMode]:
    if isinstance(value, OperationMode):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        for mode in OperationMode:
            if normalized == mode.value:
                return mode
        return None
    if isinstance(value, bool):
        # True means calibrating, as sent by the calibrate toggle
        return OperationMode.CALIBRATE if value else OperationMode.PROJECT
    return None


# Server state, rebuilt by init_state()
db: FileBasedDB = None
settings: Dict[str, Any] = {}
calibrator: Calibrator = None
controller: CalibrationCanvasController = None
measurement: MeasurementController = None
local_transform: LocalTransform = None
display_settings: DisplaySettings = None
color_transition: ColorTransition = None
projector_resolution = {'width': 1920, 'height': 1080}
operation_mode = OperationMode.CALIBRATE


def init_state(base_path: str = "config") -> None:
    """(Re)create all server state from the store under base_path."""
    global db, settings, calibrator, controller, measurement, local_transform
    global display_settings, color_transition, projector_resolution, operation_mode

    db = FileBasedDB(base_path)
    settings = db.load_settings()

    projector = settings.get('projector', {})
    projector_resolution = {
        'width': int(projector.get('default_width', 1920)),
        'height': int(projector.get('default_height', 1080)),
    }
    stored_resolution = db.load(PROJECTOR_RESOLUTION_KEY)
    if isinstance(stored_resolution, dict):
        projector_resolution.update({k: int(v) for k, v in stored_resolution.items()
                                     if k in ('width', 'height') and isinstance(v, (int, float))})

    cal_settings = settings.get('calibration', {})
    calibrator = Calibrator(
        width=cal_settings.get('width', 24),
        height=cal_settings.get('height', 18),
        unit=parse_unit(cal_settings.get('unit', 'in')) or Unit.IN,
    )
    calibrator.load(db, (projector_resolution['width'], projector_resolution['height']))

    display_settings = DisplaySettings.from_dict(db.load_display_settings() or {})
    color_transition = ColorTransition(display_settings.color_mode())
    controller = CalibrationCanvasController(calibrator, db, display_settings)

    local_transform = LocalTransform()
    stored_transform = db.load(LOCAL_TRANSFORM_KEY)
    if stored_transform is not None:
        try:
            matrix = as_matrix(stored_transform)
            if is_finite_matrix(matrix):
                local_transform.matrix = matrix
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed stored local transform")

    measurement = MeasurementController(db, calibrator.unit)
    measurement.load()
    _sync_measurement_transforms()

    operation_mode = OperationMode.CALIBRATE
    logger.info("State loaded from %s (calibrated=%s)", base_path, calibrator.is_calibrated())


def _now(data: Optional[Dict[str, Any]] = None) -> float:
    """Event time in seconds; clients may send their own clock as 't'."""
    if data and isinstance(data.get('t'), (int, float)):
        return float(data['t'])
    return time.monotonic()


def _sync_measurement_transforms() -> None:
    measurement.set_unit(calibrator.unit)
    measurement.set_transforms(calibrator.content_calibration_transform, local_transform.matrix)


def _calibration_payload() -> Dict[str, Any]:
    data = calibrator.get_calibration_data()
    data.update({
        'live_points': [point_to_dict(p) for p in controller.points],
        'is_calibrated': calibrator.is_calibrated(),
        'is_concave': calibrator.is_concave(),
        'is_degenerate': calibrator.is_degenerate(),
        'active_corner': controller.active_corner,
        'hover_corner': controller.hover_corner,
        'is_precision_movement': controller.precision_active,
        'calibration_transform': matrix_to_list(calibrator.calibration_transform),
        'perspective': matrix_to_list(calibrator.perspective),
    })
    return data


def _transform_payload() -> Dict[str, Any]:
    matrix = local_transform.matrix
    payload = {
        'local_transform': matrix_to_list(matrix),
        'is_flipped': bool(is_finite_matrix(matrix) and is_flipped(matrix)),
        'calibration_transform': matrix_to_list(calibrator.content_calibration_transform),
        'matrix3d': None,
    }
    if calibrator.content_calibration_transform is not None:
        composed = calibrator.content_calibration_transform @ matrix
        if is_finite_matrix(composed):
            payload['matrix3d'] = to_matrix3d(composed)
    return payload


def _measurements_payload() -> Dict[str, Any]:
    readout = measurement.current_readout()
    return {
        'lines': measurement.lines_to_list(),
        'selected_line': measurement.selected_line,
        'measuring': measurement.measuring,
        'axis_constrained': measurement.axis_constrained,
        'readout': readout.label if readout is not None else None,
    }


def _state_payload() -> Dict[str, Any]:
    return {
        'operation_mode': operation_mode.value,
        'calibration': _calibration_payload(),
        'transform': _transform_payload(),
        'measurements': _measurements_payload(),
        'display_settings': display_settings.to_dict(),
        'color_progress': color_transition.progress,
        'projector_resolution': projector_resolution,
    }


def _broadcast(event: str, payload: Dict[str, Any]) -> None:
    for room in ROOMS:
        socketio.emit(event, payload, room=room)


def broadcast_calibration() -> None:
    _sync_measurement_transforms()
    _broadcast('calibration_updated', _calibration_payload())


def broadcast_transform() -> None:
    _sync_measurement_transforms()
    _broadcast('transform_updated', _transform_payload())


def broadcast_measurements() -> None:
    _broadcast('measurements_updated', _measurements_payload())


def _save_local_transform() -> None:
    if not db.save(LOCAL_TRANSFORM_KEY, matrix_to_list(local_transform.matrix)):
        logger.error("Failed to persist local transform")


def _set_display_settings(new_settings: DisplaySettings) -> None:
    global display_settings
    display_settings = new_settings
    controller.display_settings = new_settings
    color_transition.set_color_mode(new_settings.color_mode())
    db.save_display_settings(new_settings.to_dict())


def render_frame(with_measurements: bool = True) -> CanvasRenderer:
    """Render the current canvas at the projector resolution."""
    renderer = CanvasRenderer(projector_resolution['width'], projector_resolution['height'])
    cs = CanvasState.from_points(
        controller.points, calibrator.width, calibrator.height,
        is_calibrating=operation_mode is OperationMode.CALIBRATE,
        active_corner=controller.active_corner,
        hover_corner=controller.hover_corner,
        unit=calibrator.unit,
        display_settings=display_settings,
        transition_progress=color_transition.progress,
        is_precision_movement=controller.precision_active,
    )
    renderer.render(cs)
    if with_measurements and operation_mode is OperationMode.PROJECT and calibrator.is_valid():
        renderer.draw_measurements(measurement.overlay())
    return renderer


# API Endpoints

@app.route('/')
def index():
    """Current state summary."""
    return jsonify(_state_payload())


@app.route('/api/state', methods=['GET'])
def get_state():
    try:
        return jsonify(_state_payload())
    except Exception as e:
        logger.exception("Error building state")
        return jsonify({'error': str(e)}), 500


@app.route('/api/calibration', methods=['GET'])
def get_calibration():
    """Get the current calibration."""
    try:
        return jsonify(_calibration_payload())
    except Exception as e:
        return jsonify({'error': str(e)}), 500


@app.route('/api/calibration', methods=['POST'])
def save_calibration():
    """Update points, dimensions and/or unit of the calibration."""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'error': 'Expected a JSON object'}), 400

        # Validate everything before touching the calibrator
        unit = None
        if 'unit' in data:
            unit = parse_unit(data['unit'])
            if unit is None:
                return jsonify({'error': f"Invalid unit: {data['unit']!r}"}), 400

        dimensions = None
        if 'width' in data or 'height' in data:
            try:
                width = Calibrator.check_dimension('width', data.get('width', calibrator.width))
                height = Calibrator.check_dimension('height', data.get('height', calibrator.height))
                dimensions = (width, height)
            except (TypeError, ValueError) as e:
                return jsonify({'error': str(e)}), 400

        points = None
        if 'points' in data:
            if not isinstance(data['points'], list):
                return jsonify({'error': 'points must be a list'}), 400
            if len(data['points']) > MAX_POINTS:
                return jsonify({'error': f'At most {MAX_POINTS} points are allowed'}), 400
            try:
                points = [to_point(p) for p in data['points']]
            except (KeyError, TypeError, ValueError) as e:
                return jsonify({'error': f'Invalid points: {e}'}), 400

        if unit is not None:
            calibrator.set_unit(unit)
        if dimensions is not None:
            calibrator.set_dimensions(*dimensions)
        if points is not None:
            calibrator.set_calibration_points(points)

        controller.sync_from_calibrator()
        if calibrator.is_complete():
            calibrator.save(db)
        else:
            db.save_calibration(calibrator.get_calibration_data())

        broadcast_calibration()
        return jsonify({'success': True, 'calibration': _calibration_payload()})

    except Exception as e:
        logger.exception("Error saving calibration")
        return jsonify({'error': str(e)}), 500


@app.route('/api/calibration/points', methods=['DELETE'])
def clear_calibration_points():
    """Remove all corners so they can be placed again."""
    try:
        calibrator.set_calibration_points([])
        db.delete(POINTS_KEY)
        controller.sync_from_calibrator()
        broadcast_calibration()
        return jsonify({'success': True})
    except Exception as e:
        logger.exception("Error clearing calibration points")
        return jsonify({'error': str(e)}), 500


@app.route('/api/transform', methods=['GET'])
def get_transform():
    try:
        return jsonify(_transform_payload())
    except Exception as e:
        return jsonify({'error': str(e)}), 500


@app.route('/api/local-transform', methods=['GET'])
def get_local_transform():
    return jsonify({'local_transform': matrix_to_list(local_transform.matrix)})


@app.route('/api/local-transform', methods=['POST'])
def update_local_transform():
    """Apply one local transform action, e.g. {'type': 'rotate', 'center_point': {...}}."""
    try:
        data = request.get_json(silent=True)
        try:
            action = parse_local_transform_action(data)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400

        local_transform.dispatch(action)
        _save_local_transform()
        broadcast_transform()
        return jsonify({'success': True, **_transform_payload()})
    except Exception as e:
        logger.exception("Error updating local transform")
        return jsonify({'error': str(e)}), 500


@app.route('/api/display-settings', methods=['GET'])
def get_display_settings():
    return jsonify(display_settings.to_dict())


@app.route('/api/display-settings', methods=['POST'])
def update_display_settings():
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'error': 'Expected a JSON object'}), 400
        _set_display_settings(display_settings.updated(data))
        _broadcast('display_settings_updated', display_settings.to_dict())
        return jsonify({'success': True, 'display_settings': display_settings.to_dict()})
    except Exception as e:
        logger.exception("Error updating display settings")
        return jsonify({'error': str(e)}), 500


@app.route('/api/measurements', methods=['GET'])
def get_measurements():
    return jsonify(_measurements_payload())


@app.route('/api/measurements', methods=['DELETE'])
def clear_measurements():
    try:
        measurement.clear()
        broadcast_measurements()
        return jsonify({'success': True})
    except Exception as e:
        logger.exception("Error clearing measurements")
        return jsonify({'error': str(e)}), 500


@app.route('/api/measurements/<int:index>', methods=['DELETE'])
def delete_measurement(index: int):
    try:
        if not measurement.delete_line(index):
            return jsonify({'error': f'No measurement line {index}'}), 404
        broadcast_measurements()
        return jsonify({'success': True, **_measurements_payload()})
    except Exception as e:
        logger.exception("Error deleting measurement %s", index)
        return jsonify({'error': str(e)}), 500


@app.route('/api/render/calibration.png', methods=['GET'])
def render_calibration_png():
    """Rasterise the current canvas as PNG."""
    try:
        with_measurements = request.args.get('measurements', '1') != '0'
        renderer = render_frame(with_measurements)
        return Response(renderer.encode_png(), mimetype='image/png')
    except Exception as e:
        logger.exception("Error rendering calibration")
        return jsonify({'error': str(e)}), 500


# WebSocket Events

@socketio.on('connect')
def handle_connect():
    """Handle client connection."""
    logger.info("Client connected: %s", request.sid)


@socketio.on('disconnect')
def handle_disconnect():
    logger.info("Client disconnected: %s", request.sid)


@socketio.on('join_room')
def handle_join_room(data):
    """Handle client joining a room (control or projector)."""
    room = (data or {}).get('room')
    if room not in ROOMS:
        logger.warning("Refusing to join unknown room %r", room)
        return
    join_room(room)
    emit('state', _state_payload())
    if room == 'projector':
        emit('projector_resolution', projector_resolution, room='control')


@socketio.on('leave_room')
def handle_leave_room(data):
    room = (data or {}).get('room')
    if room in ROOMS:
        leave_room(room)


@socketio.on('calibration_pointer_down')
def handle_calibration_pointer_down(data):
    try:
        controller.handle_pointer_down(to_point(data), _now(data))
        broadcast_calibration()
    except Exception:
        logger.exception("Error handling calibration pointer down")


@socketio.on('calibration_pointer_move')
def handle_calibration_pointer_move(data):
    try:
        p = to_point(data)
        now = _now(data)
        if data.get('touch'):
            controller.handle_move(p, TOUCH_FILTER, now)
        elif controller.is_dragging() or controller.is_panning():
            controller.handle_move(p, MOUSE_FILTER, now)
        else:
            controller.handle_hover(p)
        broadcast_calibration()
    except Exception:
        logger.exception("Error handling calibration pointer move")


@socketio.on('calibration_pointer_up')
def handle_calibration_pointer_up(data=None):
    try:
        if controller.handle_pointer_up(_now(data)):
            broadcast_calibration()
    except Exception:
        logger.exception("Error handling calibration pointer up")


@socketio.on('calibration_tick')
def handle_calibration_tick(data=None):
    try:
        was_precise = controller.precision_active
        if controller.tick(_now(data)) != was_precise:
            broadcast_calibration()
    except Exception:
        logger.exception("Error handling calibration tick")


@socketio.on('calibration_key')
def handle_calibration_key(data):
    try:
        key = data.get('key')
        if controller.handle_key_down(key, bool(data.get('shift')), bool(data.get('fine'))):
            if key == 'Tab' and data.get('shift'):
                _broadcast('display_settings_updated', display_settings.to_dict())
            broadcast_calibration()
    except Exception:
        logger.exception("Error handling calibration key")


@socketio.on('set_measuring')
def handle_set_measuring(data):
    try:
        measurement.set_measuring(bool((data or {}).get('measuring', True)))
        broadcast_measurements()
    except Exception:
        logger.exception("Error toggling measuring")


@socketio.on('measure_pointer_down')
def handle_measure_pointer_down(data):
    try:
        if measurement.handle_pointer_down(to_point(data)):
            broadcast_measurements()
    except Exception:
        logger.exception("Error handling measure pointer down")


@socketio.on('measure_pointer_move')
def handle_measure_pointer_move(data):
    try:
        if measurement.handle_pointer_move(to_point(data), int(data.get('buttons', 1))):
            broadcast_measurements()
    except Exception:
        logger.exception("Error handling measure pointer move")


@socketio.on('measure_pointer_up')
def handle_measure_pointer_up(data):
    try:
        measurement.handle_pointer_up(to_point(data))
        broadcast_measurements()
    except Exception:
        logger.exception("Error handling measure pointer up")


@socketio.on('measure_key')
def handle_measure_key(data):
    try:
        key = data.get('key')
        shift = bool(data.get('shift'))
        if data.get('up'):
            measurement.handle_key_up(key, shift)
        else:
            measurement.handle_key_down(key, shift)
        broadcast_measurements()
    except Exception:
        logger.exception("Error handling measure key")


@socketio.on('local_transform')
def handle_local_transform(data):
    try:
        action = parse_local_transform_action(data)
    except ValueError as e:
        logger.warning("Rejected local transform action: %s", e)
        emit('error', {'error': str(e)})
        return
    try:
        local_transform.dispatch(action)
        _save_local_transform()
        broadcast_transform()
    except Exception:
        logger.exception("Error applying local transform")


@socketio.on('pattern_drag')
def handle_pattern_drag(data):
    """Drag the pattern: {'phase': 'start'|'move'|'end', 'x', 'y', 'axis_locked'}."""
    try:
        phase = data.get('phase')
        perspective = calibrator.content_perspective
        if phase == 'end':
            if local_transform.is_dragging():
                local_transform.end_drag()
                _save_local_transform()
                broadcast_transform()
            return
        if perspective is None:
            return
        if phase == 'start':
            local_transform.start_drag(to_point(data), perspective)
        elif phase == 'move':
            if local_transform.drag_to(to_point(data), perspective, bool(data.get('axis_locked'))):
                broadcast_transform()
    except Exception:
        logger.exception("Error handling pattern drag")


@socketio.on('set_operation_mode')
def handle_set_operation_mode(data):
    global operation_mode
    try:
        mode = _parse_operation_mode((data or {}).get('mode'))
        if mode is None:
            logger.warning("Unable to parse operation mode: %r", data)
            return
        operation_mode = mode
        controller.sync_from_calibrator()
        logger.info("Operation mode set to %s", mode.value)
        _broadcast('operation_mode', {'mode': mode.value})
    except Exception:
        logger.exception("Error setting operation mode")


@socketio.on('projector_resolution')
def handle_projector_resolution(data):
    """Receive projector reported resolution and broadcast to control."""
    try:
        w = int(data.get('width', projector_resolution['width']))
        h = int(data.get('height', projector_resolution['height']))
        projector_resolution['width'] = max(1, w)
        projector_resolution['height'] = max(1, h)
        db.save(PROJECTOR_RESOLUTION_KEY, projector_resolution)
        emit('projector_resolution', projector_resolution, room='control')
    except Exception:
        logger.exception("Error handling projector resolution")


@socketio.on('color_tick')
def handle_color_tick(data):
    """Advance the colour transition by dt seconds."""
    try:
        dt = float((data or {}).get('dt', 0.0))
        progress = color_transition.advance(dt)
        _broadcast('color_progress', {
            'progress': progress,
            'running': color_transition.state.is_running(),
        })
    except Exception:
        logger.exception("Error advancing colour transition")


init_state()


if __name__ == '__main__':
    logger.info("=" * 60)
    logger.info("Pattern Projector - Starting Server")
    logger.info("=" * 60)
    server_settings = settings.get('server', {})
    socketio.run(app, host=server_settings.get('host', '0.0.0.0'),
                 port=int(server_settings.get('port', 5670)),
                 debug=bool(server_settings.get('debug', False)), log_output=True)
