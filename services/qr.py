"""QR code utilities for labelling batches with their traceability link."""

from __future__ import annotations

import base64
import io
import json
from typing import Any, Dict, Optional

import qrcode

from errors import ValidationError


class QRService:
    def __init__(self, frontend_url: str):
        self.frontend_url = frontend_url.rstrip("/")

    def _build_payload(self, batch: Any, farmer_name: Optional[str]) -> Dict:
        return {
            "batchId": batch.id,
            "batchNumber": batch.batch_number,
            "produce": batch.produce,
            "farmer": farmer_name,
            "location": batch.farm_location,
            "harvestDate": batch.harvest_date.isoformat() + "Z" if batch.harvest_date else None,
            "url": f"{self.frontend_url}/product/{batch.id}",
        }

    def generate(self, batch: Any, farmer_name: Optional[str] = None) -> Dict[str, Any]:
        payload = self._build_payload(batch, farmer_name)
        payload_json = json.dumps(payload)

        qr_img = qrcode.make(payload_json)
        buffer = io.BytesIO()
        qr_img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")

        return {
            "batchId": batch.id,
            "payload": payload_json,
            "qrImageBase64": encoded,
            "dataUrl": f"data:image/png;base64,{encoded}",
        }

    @staticmethod
    def decode_payload(payload: str) -> Dict:
        try:
            decoded = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValidationError("Invalid QR payload") from exc
        if not isinstance(decoded, dict) or "batchId" not in decoded:
            raise ValidationError("Invalid QR payload", details="batchId missing")
        batch_id = decoded["batchId"]
        if isinstance(batch_id, str) and batch_id.strip().isdigit():
            batch_id = int(batch_id)
        if isinstance(batch_id, bool) or not isinstance(batch_id, int):
            raise ValidationError("Invalid QR payload", details=f"batchId {batch_id!r} is not an integer")
        decoded["batchId"] = batch_id
        return decoded
