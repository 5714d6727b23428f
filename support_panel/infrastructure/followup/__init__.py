from .follow_up_service import FollowUp, FollowUpService

__all__ = ["FollowUp", "FollowUpService"]
