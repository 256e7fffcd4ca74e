"""Translate channel-layer events into camelCase client messages (WebSocket and SSE share these)."""

from typing import Any, Dict


def location_update(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "location_update",
        "rideId": event.get("ride_id"),
        "driverId": event.get("driver_id"),
        "location": event.get("location"),
    }


def accuracy_degraded(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "accuracy_degraded",
        "rideId": event.get("ride_id"),
        "accuracy": event.get("accuracy"),
    }


def ride_status(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "ride_status",
        "rideId": event.get("ride_id"),
        "status": event.get("status"),
        "message": event.get("message", ""),
    }


def tracking_state(event: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "tracking_state", "rideId": event.get("ride_id"), "state": event.get("state")}


def tracking_stopped(event: Dict[str, Any]) -> Dict[str, Any]:
    message = {"type": "tracking_stopped", "rideId": event.get("ride_id")}
    if event.get("reason"):
        message["reason"] = event["reason"]
    return message


def notification(event: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "notification", "notification": event.get("notification") or {}}
