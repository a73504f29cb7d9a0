from .database import Database
from .models import BalanceLedger, Category, PersistedSession, Task
from .repository import Repository

__all__ = ["Database", "BalanceLedger", "Category", "PersistedSession", "Task", "Repository"]
