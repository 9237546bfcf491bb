# Author: Omi Shrestha

"""
Heart rate screen logic: connect to one sensor, stream heart rate and RR
intervals onto an HrDisplay, and release everything on teardown.

Transport callbacks and stream events are moved onto the UI thread before
they touch the session or the display.
"""

from typing import Optional

from ble_device import ConnectionState, DeviceInfo, Feature
from ble_utils import DIS_CHAR_UUIDS
from display import HrDisplay, UiThread
from hr_transport import HrTransport, InvalidArgument, TransportCallback
from permissions import BLUETOOTH_CONNECT, BLUETOOTH_SCAN, Permissions, check_and_request

CONNECT_PERMISSIONS = (BLUETOOTH_SCAN, BLUETOOTH_CONNECT)


class HrSession(TransportCallback):
    def __init__(self, device_id: str, transport: HrTransport, ui: UiThread,
                 display: Optional[HrDisplay] = None,
                 permissions: Optional[Permissions] = None):
        if not device_id:
            raise ValueError("HR session couldn't be created, no device id given")

        self.device_id = device_id
        self.transport = transport
        self.ui = ui
        self.display = display or HrDisplay(device_id)
        self.permissions = permissions or Permissions()
        self.state = ConnectionState.IDLE
        self.hr_subscription = None
        self._torn_down = False

        self.transport.set_callback(self)
        self._set_state(ConnectionState.IDLE)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.teardown()
        await self.transport.wait_closed()
        return False

    @property
    def is_device_connected(self):
        return self.state in (ConnectionState.CONNECTED, ConnectionState.STREAMING)

    def _set_state(self, state: ConnectionState):
        self.state = state
        self.display.state_text = state.value

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def connect(self):
        """Connect (or reconnect after a disconnect) and start streaming."""
        self._check_permissions_and_stream_data()

    def _check_permissions_and_stream_data(self):
        if check_and_request(self.permissions, CONNECT_PERMISSIONS,
                             self.on_permissions_result):
            self._connect_to_device_and_stream_data()

    def on_permissions_result(self, results):
        if results and all(results.values()):
            self._connect_to_device_and_stream_data()
        else:
            self.display.toast("Bluetooth permission denied. Cannot connect to the device.")

    def _connect_to_device_and_stream_data(self):
        if self._torn_down:
            print(f"[HR] Session for {self.device_id} already torn down")
            return
        if self.state in (ConnectionState.IDLE, ConnectionState.DISCONNECTED):
            try:
                print(f"[HR] Attempting to connect to device: {self.device_id}")
                self.transport.connect_to_device(self.device_id)
            except InvalidArgument as e:
                print(f"[HR] Failed to connect. Reason {e}")
                self.display.toast(f"Failed to connect: {e}", long=True)
                return
            self._set_state(ConnectionState.CONNECTING)
        self.stream_hr_data()

    def stream_hr_data(self):
        if not self.is_device_connected:
            print("[HR] Cannot stream, device not connected")
            return

        is_disposed = self.hr_subscription is None or self.hr_subscription.is_disposed
        if not is_disposed:
            print("[HR] HR stream already active")
            return

        print(f"[HR] Starting HR stream for device: {self.device_id}")
        self.hr_subscription = self.transport.start_hr_streaming(
            self.device_id,
            lambda sample: self.ui.run_on_ui_thread(self._on_hr_sample, sample),
            lambda error: self.ui.run_on_ui_thread(self._on_hr_error, error),
            lambda: self.ui.run_on_ui_thread(self._on_hr_complete),
        )
        self._set_state(ConnectionState.STREAMING)

    def _on_hr_sample(self, sample):
        if self._torn_down:
            return
        self.display.show_sample(sample)

    def _end_stream(self):
        if self.hr_subscription is not None:
            self.hr_subscription.terminate()
        if self.state == ConnectionState.STREAMING:
            self._set_state(ConnectionState.CONNECTED)

    def _on_hr_error(self, error):
        error_string = f"HR stream failed: {error}"
        print(f"[HR] {error_string}")
        self._end_stream()
        self.display.toast(error_string, long=True)

    def _on_hr_complete(self):
        print("[HR] HR stream complete")
        self._end_stream()
        self.display.toast("HR stream completed")

    def teardown(self):
        """Dispose the stream and release the transport. Safe to call twice."""
        if self._torn_down:
            return
        self._torn_down = True
        if self.hr_subscription is not None and not self.hr_subscription.is_disposed:
            self.hr_subscription.dispose()
        self.hr_subscription = None
        self.transport.shutdown()
        self._set_state(ConnectionState.IDLE)
        print(f"[HR] Session for {self.device_id} closed")

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def device_connecting(self, info: DeviceInfo):
        print(f"[HR] Device connecting {info.device_id}")

    def device_connected(self, info: DeviceInfo):
        print(f"[HR] Device connected {info.device_id}")
        self.ui.run_on_ui_thread(self._on_device_connected, info)

    def _on_device_connected(self, info):
        if self._torn_down:
            return
        self.display.toast("Connected")
        self._set_state(ConnectionState.CONNECTED)
        self.stream_hr_data()

    def device_disconnected(self, info: DeviceInfo):
        print(f"[HR] Device disconnected {info.device_id}")
        self.ui.run_on_ui_thread(self._on_device_disconnected)

    def _on_device_disconnected(self):
        if self._torn_down:
            return
        if self.hr_subscription is not None:
            self.hr_subscription.dispose()
        self.hr_subscription = None
        self.display.reset()
        self._set_state(ConnectionState.DISCONNECTED)

    def connection_failed(self, info: DeviceInfo, error: Exception):
        print(f"[HR] Connection to {info.device_id} failed: {error}")
        self.ui.run_on_ui_thread(self._on_connection_failed, error)

    def _on_connection_failed(self, error):
        if self._torn_down:
            return
        self._on_device_disconnected()
        # Timeouts carry no message
        reason = str(error) or type(error).__name__
        self.display.toast(f"Failed to connect: {reason}", long=True)

    def dis_information_received(self, identifier: str, uuid: str, value: str):
        print(f"[HR] Dis information received: {identifier} {uuid} {value}")
        label = DIS_CHAR_UUIDS.get(uuid, uuid)
        self.ui.run_on_ui_thread(self.display.device_info.__setitem__, label, value)

    def feature_ready(self, identifier: str, feature: Feature):
        print(f"[HR] Feature ready {feature.value}")
        if feature == Feature.ONLINE_STREAMING:
            self.ui.run_on_ui_thread(self._check_permissions_and_stream_data)

    def battery_level_received(self, identifier: str, level: int):
        print(f"[HR] Battery level {identifier}: {level}%")
        self.ui.run_on_ui_thread(setattr, self.display, "battery_level", level)
