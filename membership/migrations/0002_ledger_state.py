import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('membership', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='LedgerContract',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('address', models.CharField(max_length=100, unique=True)),
                ('admin', models.CharField(max_length=100)),
                ('next_token_id', models.BigIntegerField(default=0)),
                ('treasury_balance', models.BigIntegerField(default=0, help_text='Payout pool in micro-units')),
                ('payout_amount', models.BigIntegerField(help_text='Initial grant per membership in micro-units')),
                ('low_balance_threshold', models.BigIntegerField(default=0)),
                ('below_threshold', models.BooleanField(default=False, help_text='Side of the threshold last reported to listeners')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='LedgerAccount',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('address', models.CharField(max_length=100, unique=True)),
                ('balance', models.BigIntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='LedgerBlock',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('number', models.BigIntegerField(unique=True)),
                ('tx_hash', models.CharField(max_length=64, unique=True)),
                ('sender', models.CharField(max_length=100)),
                ('fee_payer', models.CharField(max_length=100)),
                ('timestamp', models.BigIntegerField()),
                ('success', models.BooleanField(default=True)),
                ('events', models.JSONField(blank=True, default=list)),
                ('revert_reason', models.CharField(blank=True, max_length=50)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'ordering': ['number'],
            },
        ),
        migrations.CreateModel(
            name='ConsumedNonce',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('forwarder', models.CharField(max_length=100)),
                ('sender', models.CharField(max_length=100)),
                ('nonce', models.BigIntegerField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'unique_together': {('forwarder', 'sender', 'nonce')},
            },
        ),
        migrations.CreateModel(
            name='LedgerMembership',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('token_id', models.BigIntegerField()),
                ('owner', models.CharField(max_length=100)),
                ('minted_at', models.BigIntegerField(help_text='Block timestamp (unix seconds)')),
                ('contract', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to='membership.ledgercontract')),
            ],
            options={
                'ordering': ['token_id'],
                'unique_together': {('contract', 'owner'), ('contract', 'token_id')},
            },
        ),
    ]
