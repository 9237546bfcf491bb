# Author: Omi Shrestha

"""
Heart rate sensor transport.

HrTransport is what the heart rate screen talks to: connect, stream, shut
down, plus a callback object for connection events. BleakHrTransport
implements it with bleak against the standard Heart Rate, Battery and
Device Information services a Polar H10 exposes.
"""

import asyncio

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from ble_device import DeviceInfo, Feature
from ble_utils import (
    BATTERY_LEVEL_UUID,
    DIS_CHAR_UUIDS,
    HR_MEASUREMENT_UUID,
    is_polar_id,
    is_valid_device_id,
)
from config import CONNECT_TIMEOUT, RESOLVE_TIMEOUT
from notification_handler import handle_hr_notify

ALL_FEATURES = (Feature.ONLINE_STREAMING, Feature.BATTERY_INFO, Feature.DEVICE_INFO)


class InvalidArgument(ValueError):
    """Raised when a device id cannot identify a sensor."""


class Subscription:
    """Cancellable handle to a running stream."""

    def __init__(self):
        self.task = None
        self._disposed = False

    @property
    def is_disposed(self):
        return self._disposed

    def dispose(self):
        if self._disposed:
            return
        self._disposed = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def terminate(self):
        """Mark the stream as ended after its last error/complete event."""
        self._disposed = True


class TransportCallback:
    """Connection events. Methods may be called from any thread."""

    def device_connecting(self, info: DeviceInfo):
        pass

    def device_connected(self, info: DeviceInfo):
        pass

    def device_disconnected(self, info: DeviceInfo):
        pass

    def connection_failed(self, info: DeviceInfo, error: Exception):
        pass

    def dis_information_received(self, identifier: str, uuid: str, value: str):
        pass

    def feature_ready(self, identifier: str, feature: Feature):
        pass

    def battery_level_received(self, identifier: str, level: int):
        pass


class HrTransport:
    def set_callback(self, callback: TransportCallback):
        raise NotImplementedError

    def connect_to_device(self, device_id: str):
        """Start connecting; raises InvalidArgument for unusable ids."""
        raise NotImplementedError

    def start_hr_streaming(self, device_id, on_next, on_error, on_complete) -> Subscription:
        raise NotImplementedError

    def shutdown(self):
        raise NotImplementedError

    async def wait_closed(self):
        pass


class BleakHrTransport(HrTransport):
    """HrTransport over bleak. Must be driven from the event loop thread."""

    def __init__(self, features=ALL_FEATURES):
        self.features = set(features)
        self.callback = TransportCallback()
        self._clients = {}          # device_id -> BleakClient
        self._infos = {}            # device_id -> DeviceInfo
        self._link_lost = {}        # device_id -> asyncio.Event
        self._connect_tasks = {}    # device_id -> Task
        self._subscriptions = set()
        self._tasks = set()
        self._shut_down = False

    def set_callback(self, callback: TransportCallback):
        self.callback = callback

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def connect_to_device(self, device_id: str):
        if not is_valid_device_id(device_id):
            raise InvalidArgument(f"Invalid device id: {device_id!r}")
        if self._shut_down:
            raise BleakError("Transport has been shut down")

        client = self._clients.get(device_id)
        if client is not None and client.is_connected:
            print(f"[BLE] Already connected to {device_id}")
            return
        pending = self._connect_tasks.get(device_id)
        if pending is not None and not pending.done():
            print(f"[BLE] Connection to {device_id} already in progress")
            return

        task = self._spawn(self._connect(device_id))
        self._connect_tasks[device_id] = task
        task.add_done_callback(lambda t: self._connect_tasks.pop(device_id, None))

    async def _resolve(self, device_id):
        """Scan for the device. Returns (BLEDevice, rssi), or (None, None)."""
        if is_polar_id(device_id):
            suffix = device_id.upper()

            def match(device, advertisement_data):
                name = device.name or advertisement_data.local_name or ""
                return name.upper().endswith(suffix)

            print(f"[BLE] Looking up Polar device {device_id}...")
        else:
            address = device_id.upper()

            def match(device, advertisement_data):
                return device.address.upper() == address

        seen = {}

        def capture(device, advertisement_data):
            if not match(device, advertisement_data):
                return False
            seen["rssi"] = advertisement_data.rssi
            return True

        device = await BleakScanner.find_device_by_filter(capture, timeout=RESOLVE_TIMEOUT)
        return device, seen.get("rssi")

    async def _connect(self, device_id):
        info = DeviceInfo(device_id=device_id, address=device_id)
        self._infos[device_id] = info
        self.callback.device_connecting(info)

        try:
            device, rssi = await self._resolve(device_id)
            if device is None:
                raise BleakError(f"Device {device_id} not found")
            info.address = device.address
            info.name = device.name or ""
            info.rssi = rssi

            link_lost = asyncio.Event()
            self._link_lost[device_id] = link_lost
            client = BleakClient(
                device,
                disconnected_callback=lambda c: self._on_disconnected(device_id),
                timeout=CONNECT_TIMEOUT,
            )
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            print(f"[BLE] Connection to {device_id} failed: {e}")
            self._link_lost.pop(device_id, None)
            if not self._shut_down:
                self.callback.connection_failed(info, e)
            return

        if self._shut_down:
            await self._disconnect(device_id, client)
            return

        self._clients[device_id] = client
        print(f"[BLE] Connected to {device_id} ({info.address}, RSSI: {info.rssi})")
        self.callback.device_connected(info)

        if Feature.DEVICE_INFO in self.features:
            await self._read_device_information(device_id, client)
        if Feature.BATTERY_INFO in self.features:
            await self._read_battery_level(device_id, client)
        if Feature.ONLINE_STREAMING in self.features:
            if client.services.get_characteristic(HR_MEASUREMENT_UUID) is not None:
                self.callback.feature_ready(device_id, Feature.ONLINE_STREAMING)
            else:
                print(f"[BLE] {device_id} has no Heart Rate Measurement characteristic")

    async def _read_device_information(self, device_id, client):
        for uuid, label in DIS_CHAR_UUIDS.items():
            if client.services.get_characteristic(uuid) is None:
                continue
            try:
                raw = await client.read_gatt_char(uuid)
            except BleakError as e:
                print(f"[BLE] Could not read {label} from {device_id}: {e}")
                continue
            value = bytes(raw).decode("utf-8", errors="replace").strip("\x00 ")
            self.callback.dis_information_received(device_id, uuid, value)
        self.callback.feature_ready(device_id, Feature.DEVICE_INFO)

    async def _read_battery_level(self, device_id, client):
        if client.services.get_characteristic(BATTERY_LEVEL_UUID) is None:
            return
        try:
            raw = await client.read_gatt_char(BATTERY_LEVEL_UUID)
        except BleakError as e:
            print(f"[BLE] Could not read battery level from {device_id}: {e}")
            return
        if raw:
            self.callback.battery_level_received(device_id, raw[0])
        self.callback.feature_ready(device_id, Feature.BATTERY_INFO)

    def _on_disconnected(self, device_id):
        link_lost = self._link_lost.pop(device_id, None)
        if link_lost is not None:
            link_lost.set()
        self._clients.pop(device_id, None)
        if self._shut_down:
            return
        print(f"[BLE] Disconnected from {device_id}")
        info = self._infos.get(device_id) or DeviceInfo(device_id=device_id, address=device_id)
        self.callback.device_disconnected(info)

    def start_hr_streaming(self, device_id, on_next, on_error, on_complete) -> Subscription:
        subscription = Subscription()
        self._subscriptions.add(subscription)
        subscription.task = self._spawn(
            self._stream(device_id, subscription, on_next, on_error, on_complete))
        subscription.task.add_done_callback(lambda t: self._subscriptions.discard(subscription))
        return subscription

    async def _stream(self, device_id, subscription, on_next, on_error, on_complete):
        client = self._clients.get(device_id)
        link_lost = self._link_lost.get(device_id)
        if client is None or not client.is_connected or link_lost is None:
            subscription.terminate()
            on_error(BleakError(f"Device {device_id} not connected"))
            return

        def notify_handler(sender, data: bytearray):
            if not subscription.is_disposed:
                handle_hr_notify(device_id, data, on_next)

        try:
            await client.start_notify(HR_MEASUREMENT_UUID, notify_handler)
            print(f"[BLE] Subscribed to heart rate notifications for {device_id}")
            await link_lost.wait()
        except asyncio.CancelledError:
            if client.is_connected:
                try:
                    await client.stop_notify(HR_MEASUREMENT_UUID)
                except (BleakError, OSError) as e:
                    print(f"[BLE] stop_notify on {device_id} failed: {e}")
            raise
        except (BleakError, OSError) as e:
            subscription.terminate()
            on_error(e)
            return

        # The link went away underneath an undisposed stream
        subscription.terminate()
        on_complete()

    async def _disconnect(self, device_id, client):
        try:
            if client.is_connected:
                await client.disconnect()
                print(f"[BLE] Disconnected from {device_id}.")
        except EOFError:
            # D-Bus connection already closed, ignore
            pass
        except (BleakError, OSError) as e:
            print(f"[BLE] Disconnect error: {e}")

    def shutdown(self):
        if self._shut_down:
            return
        self._shut_down = True
        for subscription in list(self._subscriptions):
            subscription.dispose()
        for task in list(self._connect_tasks.values()):
            task.cancel()
        for device_id, client in list(self._clients.items()):
            self._spawn(self._disconnect(device_id, client))
        self._clients.clear()
        print("[BLE] Transport shut down")

    async def wait_closed(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
