from studio.models.state_record import StateRecord

__all__ = ["StateRecord"]
