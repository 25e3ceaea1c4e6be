"""
Services: the reporting sink (notify) and the base CRUD service (crud).
"""

from .notify import Notification, Report

__all__ = ['Notification', 'Report']
