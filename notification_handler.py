# Author: Omi Shrestha

import struct
from typing import List

from ble_device import HrSample

# Heart Rate Measurement flag bits
HR_FORMAT_UINT16 = 0x01
SENSOR_CONTACT_DETECTED = 0x02
SENSOR_CONTACT_SUPPORTED = 0x04
ENERGY_EXPENDED_PRESENT = 0x08
RR_INTERVAL_PRESENT = 0x10


def parse_hr_measurement(data: bytearray) -> HrSample:
    """
    Decode a Heart Rate Measurement (0x2A37) notification.

    RR intervals arrive in 1/1024 second units and are converted to
    whole milliseconds.

    Raises:
        ValueError: if the payload is too short for its own flags
    """
    if len(data) < 2:
        raise ValueError(f"Heart rate measurement too short ({len(data)} bytes)")

    flags = data[0]
    idx = 1

    if flags & HR_FORMAT_UINT16:
        if len(data) < 3:
            raise ValueError("Heart rate measurement missing 16-bit value")
        hr = struct.unpack_from("<H", data, idx)[0]
        idx += 2
    else:
        hr = data[idx]
        idx += 1

    if flags & ENERGY_EXPENDED_PRESENT:
        idx += 2

    rrs_ms = []
    rr_available = bool(flags & RR_INTERVAL_PRESENT)
    if rr_available:
        while idx + 1 < len(data):
            rr = struct.unpack_from("<H", data, idx)[0]
            idx += 2
            rrs_ms.append(round(rr * 1000 / 1024))

    return HrSample(
        hr=hr,
        rrs_ms=rrs_ms,
        contact_status=bool(flags & SENSOR_CONTACT_DETECTED),
        contact_status_supported=bool(flags & SENSOR_CONTACT_SUPPORTED),
        rr_available=rr_available,
    )


def mean_rr_ms(rrs_ms: List[int]) -> float:
    """Arithmetic mean of RR intervals, shown as the HRV value."""
    if not rrs_ms:
        raise ValueError("No RR intervals to average")
    return sum(rrs_ms) / len(rrs_ms)


def handle_hr_notify(device_id, data: bytearray, on_sample):
    """
    Handle an incoming heart rate notification.

    Args:
        device_id: id of the streaming device, for log lines
        data: raw notification payload
        on_sample: called with the decoded HrSample
    """
    try:
        sample = parse_hr_measurement(data)
    except ValueError as e:
        print(f"[HR] {device_id} - Bad measurement {data.hex()}: {e}")
        return
    on_sample(sample)
