from flask import Flask, request, jsonify
import asyncio
import time
from threading import Lock, Thread
from typing import Optional

from ble_utils import BleakScannerBackend, check_bluetooth
from config import API_HOST, API_PORT
from device_registry import DeviceRegistry
from display import HrDisplay, Toaster, UiThread
from hr_session import HrSession
from hr_transport import BleakHrTransport
from main_menu import MainMenu
from permissions import Permissions
from scan_coordinator import ScanCoordinator

app = Flask(__name__)

# Swapped out in tests
scanner_factory = BleakScannerBackend
transport_factory = BleakHrTransport

permissions = Permissions()
toaster = Toaster()
menu = MainMenu(DeviceRegistry(), permissions, toaster)

# Screens currently open
scan_coordinator: Optional[ScanCoordinator] = None
hr_session: Optional[HrSession] = None

# Event loop for async operations, doubles as the UI thread
loop = None
loop_thread = None
ui = None
_loop_lock = Lock()


def start_event_loop(new_loop):
    """Run the asyncio event loop in a separate thread"""
    asyncio.set_event_loop(new_loop)
    new_loop.run_forever()


def ensure_event_loop():
    """Start the background event loop once"""
    global loop, loop_thread, ui
    with _loop_lock:
        if loop_thread is None:
            loop = asyncio.new_event_loop()
            ui = UiThread(loop)
            loop_thread = Thread(target=start_event_loop, args=(loop,), daemon=True)
            loop_thread.start()


def run_async(coro):
    """Run a coroutine on the event loop from a request thread"""
    ensure_event_loop()
    future = asyncio.run_coroutine_threadsafe(coro, loop)
    return future.result(timeout=30)  # 30 second timeout


def run_on_loop(fn, *args):
    """Call a plain function on the event loop thread and return its result"""
    async def call():
        return fn(*args)
    return run_async(call())


def recent_toasts(limit=10):
    return [
        {"message": t.message, "long": t.long, "timestamp": t.timestamp}
        for t in toaster.recent(limit)
    ]


@app.route('/')
def home():
    return jsonify({
        "status": "Polar H10 heart rate API is running",
        "device_id": menu.device_id,
        "endpoints": {
            "device": ["/device", "/bluetooth"],
            "search": ["/search/start", "/search/stop", "/search/devices", "/search/select"],
            "hr": ["/hr/connect", "/hr/status", "/hr/stream", "/hr/disconnect"]
        }
    })


# ============================================================================
# Main menu
# ============================================================================

@app.route('/device', methods=['GET'])
def get_device():
    """Remembered device id"""
    return jsonify({"device_id": menu.device_id})


@app.route('/device', methods=['POST'])
def set_device():
    """Manually enter a device id"""
    try:
        data = request.get_json() or {}
        device_id = menu.enter_device_id(data.get('id', ''))
        if not device_id:
            return jsonify({"error": "id required"}), 400
        return jsonify({"status": "success", "device_id": device_id})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/bluetooth', methods=['GET'])
def bluetooth_status():
    """Whether the Bluetooth adapter can be used"""
    try:
        failure = run_async(check_bluetooth())
        available = menu.on_bluetooth_checked(failure)
        return jsonify({
            "available": available,
            "reason": failure.name if failure is not None else None,
            "notices": [] if available else recent_toasts(1)
        })
    except Exception as e:
        return jsonify({"error": str(e)}), 500


# ============================================================================
# Device search
# ============================================================================

def _search_state():
    coordinator = scan_coordinator
    if coordinator is None:
        return {"scanning": False, "devices": [], "count": 0}
    devices = [d.to_dict() for d in coordinator.device_list]
    return {
        "scanning": coordinator.is_scanning,
        "button": coordinator.scan_button_label,
        "devices": devices,
        "count": len(devices)
    }


def _start_search():
    global scan_coordinator
    if not menu.on_click_search_devices():
        return False
    if scan_coordinator is None:
        scan_coordinator = ScanCoordinator(scanner_factory(), ui, permissions, toaster)
    return scan_coordinator.start_scan()


@app.route('/search/start', methods=['POST'])
def search_start():
    """Start a time-bounded scan for Polar H10 sensors"""
    try:
        started = run_on_loop(_start_search)
        if not started:
            return jsonify({"error": "permission denied", "notices": recent_toasts(1)}), 403
        return jsonify({"status": "scanning", **run_on_loop(_search_state)})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/search/stop', methods=['POST'])
def search_stop():
    """Stop the current scan"""
    try:
        if scan_coordinator is not None:
            run_on_loop(scan_coordinator.stop_scan)
        return jsonify({"status": "stopped", **run_on_loop(_search_state)})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/search/devices', methods=['GET'])
def search_devices():
    """Devices found so far"""
    try:
        return jsonify(run_on_loop(_search_state))
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/search/select', methods=['POST'])
def search_select():
    """Pick a discovered device and remember it"""
    global scan_coordinator
    try:
        data = request.get_json() or {}
        address = data.get('address')
        if not address:
            return jsonify({"error": "address required"}), 400
        if scan_coordinator is None:
            return jsonify({"error": "No search in progress"}), 409

        result = run_on_loop(scan_coordinator.select, address)
        if result is None:
            return jsonify({"error": "Device not found"}), 404

        menu.on_device_selected(result)
        run_on_loop(scan_coordinator.close)
        scan_coordinator = None
        return jsonify({"status": "success", **result})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


# ============================================================================
# Heart rate
# ============================================================================

def _open_hr_session(device_id):
    global hr_session
    if hr_session is not None and hr_session.device_id != device_id:
        hr_session.teardown()
        hr_session = None
    if hr_session is None:
        display = HrDisplay(device_id, toaster)
        hr_session = HrSession(device_id, transport_factory(), ui, display, permissions)
    hr_session.connect()
    return hr_session.display.snapshot()


@app.route('/hr/connect', methods=['POST'])
def hr_connect():
    """Connect to the remembered device and start streaming"""
    try:
        launch_args = menu.on_click_connect_hr()
        if launch_args is None:
            return jsonify({"error": "No device id, set one with POST /device"}), 400

        snapshot = run_on_loop(_open_hr_session, launch_args["id"])
        return jsonify({"status": "connecting", **snapshot, "notices": recent_toasts()})
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/hr/status', methods=['GET'])
def hr_status():
    """Latest heart rate and HRV text"""
    try:
        if hr_session is None:
            return jsonify({"error": "Not connected"}), 404
        snapshot = run_on_loop(hr_session.display.snapshot)
        return jsonify({**snapshot, "notices": recent_toasts(), "timestamp": time.time()})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@app.route('/hr/stream', methods=['POST'])
def hr_stream():
    """Restart the heart rate stream after an error or completion"""
    try:
        if hr_session is None:
            return jsonify({"error": "Not connected"}), 404
        run_on_loop(hr_session.stream_hr_data)
        return jsonify({"state": hr_session.state.value})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


async def _close_hr_session(session):
    session.teardown()
    await session.transport.wait_closed()


@app.route('/hr/disconnect', methods=['POST'])
def hr_disconnect():
    """Close the heart rate screen and release the sensor"""
    global hr_session
    try:
        if hr_session is None:
            return jsonify({"error": "Not connected"}), 404
        session, hr_session = hr_session, None
        run_async(_close_hr_session(session))
        return jsonify({"status": "disconnected", "device_id": session.device_id})
    except Exception as e:
        return jsonify({"error": str(e)}), 500


if __name__ == '__main__':
    ensure_event_loop()
    print(f"[API] Listening on {API_HOST}:{API_PORT}")
    app.run(host=API_HOST, port=API_PORT, debug=False)
