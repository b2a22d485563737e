from __future__ import annotations

"""Inspect or change the stored kiosk device id.

Sub-commands:
- show: print the stored device id
- set: store a device id without going through QR onboarding
- clear: remove the device id so the next startup onboards again
- qr: render a device id as a QR code image to show to the camera
"""

import argparse
import sys
from pathlib import Path

import cv2

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from exhibit.identity import DeviceIdentityStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the exhibit device id.")
    parser.add_argument("--db-path", default="data/device.db", help="SQLite identity store path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("show", help="Print the stored device id")

    set_parser = sub.add_parser("set", help="Store a device id")
    set_parser.add_argument("device_id")

    clear_parser = sub.add_parser("clear", help="Remove the stored device id")
    clear_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    qr_parser = sub.add_parser("qr", help="Render a device id as a QR code PNG")
    qr_parser.add_argument("device_id")
    qr_parser.add_argument("--output", default="device_id_qr.png", help="Output image path")
    qr_parser.add_argument("--scale", type=int, default=10, help="Pixels per QR module")
    return parser.parse_args(argv)


def render_qr(device_id: str, output: Path, scale: int = 10) -> Path:
    """Write a QR code image encoding `device_id` and return its path."""
    encoder = cv2.QRCodeEncoder.create()
    code = encoder.encode(device_id)
    if code is None or code.size == 0:
        raise ValueError(f"Could not encode {device_id!r} as a QR code")
    scale = max(1, scale)
    image = cv2.resize(code, None, fx=scale, fy=scale, interpolation=cv2.INTER_NEAREST)
    # Quiet zone so detectors find the finder patterns.
    border = 4 * scale
    image = cv2.copyMakeBorder(image, border, border, border, border, cv2.BORDER_CONSTANT, value=255)
    output.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(output), image):
        raise OSError(f"Failed writing {output}")
    return output


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.command == "qr":
        path = render_qr(args.device_id.strip(), Path(args.output), scale=args.scale)
        print(f"QR code written to {path}")
        return 0

    store = DeviceIdentityStore(Path(args.db_path))
    try:
        if args.command == "show":
            device_id = store.get_device_id()
            print(device_id if device_id is not None else "No device id stored.")
            return 0 if device_id is not None else 1
        if args.command == "set":
            store.set_device_id(args.device_id)
            print(f"Device id set to {store.get_device_id()}")
            return 0
        if args.command == "clear":
            if not args.yes:
                answer = input("Clear the stored device id? The exhibit will onboard again. [y/N]: ").strip().lower()
                if answer not in {"y", "yes"}:
                    print("Aborted.")
                    return 1
            removed = store.clear_device_id()
            print("Device id cleared." if removed else "No device id was stored.")
            return 0
    finally:
        store.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
