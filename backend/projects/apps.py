"""
Django application configuration for the projects app.

A project is one paid Telegram channel together with its bot credentials,
its connected payment account and the plans sold for it.
"""

from django.apps import AppConfig


class ProjectsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'projects'
    verbose_name = 'Channel Projects'
