"""
Management command to register the promotion scheduled tasks with django-q.
"""

from typing import Any

from django.core.management.base import BaseCommand

from apps.promotions.tasks import setup_promotion_scheduled_tasks


class Command(BaseCommand):
    help = "Register the scheduled cart promotion reconciliation task"

    def handle(self, *args: Any, **options: Any) -> None:
        results = setup_promotion_scheduled_tasks()
        for task_name, state in results.items():
            self.stdout.write(self.style.SUCCESS(f"✅ {task_name}: {state}"))
