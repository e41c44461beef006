import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


PRIORITY_CHOICES = [('low', 'Low'), ('medium', 'Medium'), ('high', 'High'), ('urgent', 'Urgent')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('tasks', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='OptimizationRule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('rule_name', models.CharField(max_length=120, verbose_name='rule name')),
                ('rule_type', models.CharField(choices=[('deadline_based', 'Deadline based'), ('dependency_based', 'Dependency based'), ('pattern_based', 'Pattern based'), ('context_based', 'Context based')], max_length=32, verbose_name='rule type')),
                ('description', models.TextField(blank=True, verbose_name='description')),
                ('rule_config', models.JSONField(blank=True, default=dict, verbose_name='rule config')),
                ('weight', models.FloatField(default=1.0, validators=[django.core.validators.MinValueValidator(0.0), django.core.validators.MaxValueValidator(1.0)], verbose_name='weight')),
                ('trigger_conditions', models.JSONField(blank=True, default=dict, verbose_name='trigger conditions')),
                ('exclusion_conditions', models.JSONField(blank=True, default=dict, verbose_name='exclusion conditions')),
                ('is_active', models.BooleanField(default=True, verbose_name='is active')),
                ('times_applied', models.PositiveIntegerField(default=0, verbose_name='times applied')),
                ('times_succeeded', models.PositiveIntegerField(default=0, verbose_name='times succeeded')),
                ('success_rate', models.FloatField(blank=True, null=True, verbose_name='success rate')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_rules', to=settings.AUTH_USER_MODEL, verbose_name='user')),
            ],
            options={
                'verbose_name': 'Optimization rule',
                'verbose_name_plural': 'Optimization rules',
                'ordering': ['-weight', 'id'],
            },
        ),
        migrations.CreateModel(
            name='OptimizationSchedule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('schedule_name', models.CharField(max_length=120)),
                ('schedule_type', models.CharField(choices=[('daily', 'Daily'), ('hourly', 'Hourly'), ('on_change', 'On change'), ('manual', 'Manual')], max_length=16)),
                ('schedule_time', models.TimeField(blank=True, help_text='Time of day for daily schedules.', null=True)),
                ('schedule_interval', models.PositiveIntegerField(blank=True, help_text='Interval in minutes.', null=True)),
                ('optimization_scope', models.CharField(choices=[('all', 'All'), ('pending', 'Pending'), ('active', 'Active'), ('overdue', 'Overdue')], default='all', max_length=16)),
                ('max_changes_per_run', models.PositiveIntegerField(default=10)),
                ('min_confidence_threshold', models.FloatField(default=0.7, validators=[django.core.validators.MinValueValidator(0.0), django.core.validators.MaxValueValidator(1.0)])),
                ('category_filter', models.JSONField(blank=True, default=list)),
                ('project_filter', models.JSONField(blank=True, default=list)),
                ('priority_filter', models.JSONField(blank=True, default=list)),
                ('is_active', models.BooleanField(default=True)),
                ('state', models.CharField(choices=[('idle', 'Idle'), ('due', 'Due'), ('running', 'Running')], default='idle', max_length=16)),
                ('last_run_at', models.DateTimeField(blank=True, null=True)),
                ('next_run_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_schedules', to=settings.AUTH_USER_MODEL, verbose_name='user')),
            ],
            options={
                'verbose_name': 'Optimization schedule',
                'verbose_name_plural': 'Optimization schedules',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='OptimizationJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('job_type', models.CharField(choices=[('scheduled', 'Scheduled'), ('on_demand', 'On demand'), ('triggered', 'Triggered')], default='on_demand', max_length=16)),
                ('scope', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=16)),
                ('cancel_requested', models.BooleanField(default=False)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('tasks_analyzed', models.PositiveIntegerField(default=0)),
                ('priorities_changed', models.PositiveIntegerField(default=0)),
                ('errors_count', models.PositiveIntegerField(default=0)),
                ('error_details', models.JSONField(blank=True, default=list)),
                ('progress_percentage', models.PositiveSmallIntegerField(default=0)),
                ('current_task', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('retry_of', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='retries', to='priority.optimizationjob')),
                ('schedule', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='jobs', to='priority.optimizationschedule')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_jobs', to=settings.AUTH_USER_MODEL, verbose_name='user')),
            ],
            options={
                'verbose_name': 'Optimization job',
                'verbose_name_plural': 'Optimization jobs',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='OptimizationPreference',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('aggressiveness', models.CharField(choices=[('conservative', 'Conservative'), ('balanced', 'Balanced'), ('aggressive', 'Aggressive')], default='balanced', max_length=16)),
                ('category_weights', models.JSONField(blank=True, default=dict, help_text='Category -> weight in [0, 1] used by the importance score.')),
                ('project_weights', models.JSONField(blank=True, default=dict, help_text='Project -> weight in [0, 1] used by the importance score.')),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='priority_preferences', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Optimization preference',
                'verbose_name_plural': 'Optimization preferences',
            },
        ),
        migrations.CreateModel(
            name='TaskPriorityScore',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('calculated_priority', models.CharField(choices=PRIORITY_CHOICES, max_length=16)),
                ('priority_score', models.FloatField(default=0.0)),
                ('confidence_level', models.FloatField(default=0.0, validators=[django.core.validators.MinValueValidator(0.0), django.core.validators.MaxValueValidator(1.0)])),
                ('urgency_score', models.FloatField(default=0.0)),
                ('importance_score', models.FloatField(default=0.0)),
                ('context_score', models.FloatField(default=0.0)),
                ('pattern_score', models.FloatField(default=0.0)),
                ('dependency_score', models.FloatField(default=0.0)),
                ('calculation_method', models.CharField(default='weighted_rules', max_length=32)),
                ('factors_considered', models.JSONField(blank=True, default=dict)),
                ('last_recalculated_at', models.DateTimeField()),
                ('is_current', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('job', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='scores', to='priority.optimizationjob', verbose_name='job')),
                ('task', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_scores', to='tasks.task', verbose_name='task')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='task_priority_scores', to=settings.AUTH_USER_MODEL, verbose_name='user')),
            ],
            options={
                'verbose_name': 'Task priority score',
                'verbose_name_plural': 'Task priority scores',
                'ordering': ['-created_at', '-id'],
            },
        ),
        migrations.AddConstraint(
            model_name='taskpriorityscore',
            constraint=models.UniqueConstraint(condition=models.Q(('is_current', True)), fields=('task', 'user'), name='unique_current_priority_score'),
        ),
        migrations.CreateModel(
            name='OptimizationHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('optimization_type', models.CharField(choices=[('automatic', 'Automatic'), ('suggested', 'Suggested'), ('manual_override', 'Manual override')], default='automatic', max_length=32)),
                ('old_priority', models.CharField(choices=PRIORITY_CHOICES, max_length=16)),
                ('new_priority', models.CharField(choices=PRIORITY_CHOICES, max_length=16)),
                ('confidence_score', models.FloatField(default=0.0)),
                ('priority_score', models.FloatField(default=0.0)),
                ('previous_score', models.FloatField(blank=True, null=True)),
                ('reasoning', models.TextField(blank=True)),
                ('applied_rules', models.JSONField(blank=True, default=list)),
                ('optimization_factors', models.JSONField(blank=True, default=dict)),
                ('user_accepted', models.BooleanField(blank=True, null=True)),
                ('user_feedback', models.TextField(blank=True)),
                ('feedback_at', models.DateTimeField(blank=True, null=True)),
                ('reverted_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('job', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='history', to='priority.optimizationjob', verbose_name='job')),
                ('rules', models.ManyToManyField(blank=True, related_name='history_entries', to='priority.optimizationrule')),
                ('task', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_history', to='tasks.task', verbose_name='task')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='priority_history', to=settings.AUTH_USER_MODEL, verbose_name='user')),
            ],
            options={
                'verbose_name': 'Optimization history',
                'verbose_name_plural': 'Optimization history',
                'ordering': ['-created_at', '-id'],
            },
        ),
    ]
