from fastapi import Request

from call_signaling.services.channel import SignalingChannel
from call_signaling.services.history import CallHistoryRecorder
from call_signaling.services.store import CallSessionStore


def get_store(request: Request) -> CallSessionStore:
    return request.app.state.store


def get_channel(request: Request) -> SignalingChannel:
    return request.app.state.channel


def get_history(request: Request) -> CallHistoryRecorder:
    return request.app.state.history
