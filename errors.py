from typing import Optional


class VoiceOrderError(Exception):
    """Base error for the voice ordering assistant"""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ConfigurationError(VoiceOrderError):
    user_message = (
        "Valid Gemini API Key is missing. Set GEMINI_API_KEY locally or "
        "configure a server-side key and use the proxy."
    )


class ShopClosedError(VoiceOrderError):
    user_message = "Shop is closed."

    def __init__(self, start: str, end: str):
        super().__init__(f"Shop is closed. Hours: {start}-{end}")
        self.start = start
        self.end = end


class UnsupportedEnvironmentError(VoiceOrderError):
    user_message = "No microphone is available. Connect an input device and try again."


class PermissionDeniedError(VoiceOrderError):
    user_message = "Microphone access denied. Please allow microphone and try again."


class TransportError(VoiceOrderError):
    user_message = "Connection failed. Please try again."


class ConnectionTimeoutError(TransportError):
    user_message = "Connection timeout. Please check your internet and try again."


class PolicyViolationError(VoiceOrderError):
    user_message = "Session terminated due to policy violation."


class BannedError(VoiceOrderError):
    user_message = "Access denied. Please try again later."


class PersistenceError(VoiceOrderError):
    user_message = "Problem confirming order."


class NoRidersError(VoiceOrderError):
    user_message = "No riders are configured for this shop."


class MissingFieldsError(VoiceOrderError):
    def __init__(self, fields):
        self.fields = list(fields)
        super().__init__(f"Missing required order fields: {', '.join(self.fields)}")


class OrderTransitionError(VoiceOrderError):
    def __init__(self, current, new):
        self.current = current
        self.new = new
        super().__init__(f"Cannot move order from '{current.value}' to '{new.value}'")


def describe_transport_error(error: BaseException) -> str:
    """Map a transport failure to the message shown to the customer"""
    if isinstance(error, ConnectionTimeoutError):
        return error.user_message

    text = str(error).lower()
    if "api key" in text or "401" in text:
        reason = "Invalid API key"
    elif "quota" in text or "429" in text:
        reason = "API quota exceeded"
    elif "network" in text or "timeout" in text:
        reason = "Network connection failed"
    else:
        reason = "Connection failed"
    return f"{reason}. Please try again."
