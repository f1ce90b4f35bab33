class MqSystemError(Exception):
    """Base class for every error raised by the mq_system daemons."""


class ConfigError(MqSystemError):
    pass


class BrokerError(MqSystemError):
    pass


class StoreError(MqSystemError):
    pass


class DecodeError(MqSystemError):
    pass


class BadRoot(DecodeError):
    pass


class BadShape(DecodeError):
    pass


class ScriptError(MqSystemError):
    pass


class TimeExpressionError(ScriptError):
    pass


class AbortRequested(BaseException):
    """Raised inside script workers when the engine stops all scripts.

    Derives from BaseException so script code catching Exception cannot
    suppress it.
    """
