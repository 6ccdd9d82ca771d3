from .endpoints import corporate_actions


__all__ = ["corporate_actions"]
