def __getattr__(name: str):
    if name == "BlockLatencyException":
        from .exceptions import BlockLatencyException

        return BlockLatencyException

    elif name == "EngineConfig":
        from .engine import EngineConfig

        return EngineConfig

    elif name == "LatencyEngine":
        from .engine import LatencyEngine

        return LatencyEngine

    elif name == "ParameterCache":
        from .cache import ParameterCache

        return ParameterCache

    elif name == "Settings":
        from .settings import Settings

        return Settings

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BlockLatencyException",
    "EngineConfig",
    "LatencyEngine",
    "ParameterCache",
    "Settings",
]
