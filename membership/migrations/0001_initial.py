from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='TransactionAttempt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('request_id', models.CharField(db_index=True, max_length=64, unique=True)),
                ('sender', models.CharField(db_index=True, max_length=100)),
                ('nonce', models.BigIntegerField()),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('confirmed', 'Confirmed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('outcome', models.CharField(blank=True, choices=[('issued', 'Issued'), ('already_member', 'Already member'), ('insufficient_treasury', 'Insufficient treasury'), ('failed', 'Failed after retries')], max_length=32)),
                ('retry_count', models.IntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('error_code', models.CharField(blank=True, max_length=50)),
                ('tx_hash', models.CharField(blank=True, db_index=True, max_length=100)),
                ('token_id', models.BigIntegerField(blank=True, null=True)),
                ('via_fallback', models.BooleanField(default=False, help_text='True if the operator paid for direct submission')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['sender', 'status'], name='membership__sender_4f1c2a_idx')],
            },
        ),
        migrations.CreateModel(
            name='RegistryEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('token_id', models.BigIntegerField(db_index=True, unique=True)),
                ('owner', models.CharField(db_index=True, max_length=100)),
                ('minted_at', models.DateTimeField()),
                ('payout_amount', models.BigIntegerField(blank=True, help_text='Initial grant in micro-units', null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('block_number', models.BigIntegerField(default=0)),
                ('tx_hash', models.CharField(blank=True, max_length=100)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('synced_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['token_id'],
                'indexes': [
                    models.Index(fields=['owner', 'is_active'], name='membership__owner_8d2e61_idx'),
                    models.Index(fields=['block_number'], name='membership__block_n_c93b07_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ProcessedMembershipEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tx_hash', models.CharField(db_index=True, max_length=100)),
                ('log_index', models.IntegerField(default=0)),
                ('event_name', models.CharField(max_length=50)),
                ('token_id', models.BigIntegerField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'unique_together': {('tx_hash', 'log_index')},
            },
        ),
        migrations.CreateModel(
            name='RegistryCursor',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('stream', models.CharField(max_length=50, unique=True)),
                ('last_scanned_block', models.BigIntegerField(default=-1)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
    ]
