from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("programming", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="evaluationjob",
            name="time_limit",
            field=models.PositiveIntegerField(blank=True, null=True, help_text="Hard time limit in seconds the worker task was given"),
        ),
    ]
