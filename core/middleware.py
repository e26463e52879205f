# core/middleware.py
"""
Middleware to track current user and request for audit logging
This allows billing code paths without an explicit user or request to
attribute audit entries to the staff member making the request
"""

import threading

# Thread-local storage for the current user and request
_thread_locals = threading.local()


def get_current_user():
    """Get the current user from thread-local storage"""
    return getattr(_thread_locals, 'user', None)


def set_current_user(user):
    """Set the current user in thread-local storage"""
    _thread_locals.user = user


def get_current_request():
    """Get the current request from thread-local storage"""
    return getattr(_thread_locals, 'request', None)


def set_current_request(request):
    """Set the current request in thread-local storage"""
    _thread_locals.request = request


class AuditMiddleware:
    """
    Middleware to track the current user and request for audit logging
    Stores them in thread-local storage so AuditLog.log_action can access them
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        if user and user.is_authenticated:
            set_current_user(user)
        else:
            set_current_user(None)
        set_current_request(request)

        try:
            return self.get_response(request)
        finally:
            # Clean up after request
            set_current_user(None)
            set_current_request(None)
