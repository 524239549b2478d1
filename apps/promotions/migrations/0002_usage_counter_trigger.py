"""
Install the trigger that keeps promotions.current_uses in step with
promotion_usage: every inserted usage row bumps its promotion's counter by
one in the same statement.
"""

from django.db import migrations

POSTGRES_FORWARD = """
CREATE OR REPLACE FUNCTION increment_promotion_usage() RETURNS TRIGGER AS $$
BEGIN
    UPDATE promotions SET current_uses = current_uses + 1 WHERE id = NEW.promotion_id;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS trg_increment_promotion_usage ON promotion_usage;
CREATE TRIGGER trg_increment_promotion_usage
    AFTER INSERT ON promotion_usage
    FOR EACH ROW EXECUTE FUNCTION increment_promotion_usage();
"""

POSTGRES_REVERSE = """
DROP TRIGGER IF EXISTS trg_increment_promotion_usage ON promotion_usage;
DROP FUNCTION IF EXISTS increment_promotion_usage();
"""

SQLITE_FORWARD = """
CREATE TRIGGER IF NOT EXISTS trg_increment_promotion_usage
AFTER INSERT ON promotion_usage
FOR EACH ROW
BEGIN
    UPDATE promotions SET current_uses = current_uses + 1 WHERE id = NEW.promotion_id;
END;
"""

SQLITE_REVERSE = "DROP TRIGGER IF EXISTS trg_increment_promotion_usage;"


def install_usage_trigger(apps, schema_editor):
    vendor = schema_editor.connection.vendor
    if vendor == "postgresql":
        schema_editor.execute(POSTGRES_FORWARD, params=None)
    elif vendor == "sqlite":
        schema_editor.execute(SQLITE_FORWARD, params=None)
    else:
        raise RuntimeError(f"No promotion usage trigger available for database vendor '{vendor}'")


def remove_usage_trigger(apps, schema_editor):
    vendor = schema_editor.connection.vendor
    if vendor == "postgresql":
        schema_editor.execute(POSTGRES_REVERSE, params=None)
    elif vendor == "sqlite":
        schema_editor.execute(SQLITE_REVERSE, params=None)


class Migration(migrations.Migration):

    dependencies = [
        ("promotions", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(install_usage_trigger, remove_usage_trigger),
    ]
