from .tick_host import TimerHost

__all__ = ["TimerHost"]
