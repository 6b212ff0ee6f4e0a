"""
Utilities Package for tdcheck

- ``utils.logger``: loguru setup and named loggers
- ``utils.helpers``: duration, URL and string helpers
"""
