from django.db import models


class TransactionAttempt(models.Model):
    """One dispatch of a signed forward request, driven to a terminal status"""
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('failed', 'Failed'),
    ]

    OUTCOME_CHOICES = [
        ('issued', 'Issued'),
        ('already_member', 'Already member'),
        ('insufficient_treasury', 'Insufficient treasury'),
        ('failed', 'Failed after retries'),
    ]

    request_id = models.CharField(max_length=64, unique=True, db_index=True)
    sender = models.CharField(max_length=100, db_index=True)
    nonce = models.BigIntegerField()

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    outcome = models.CharField(max_length=32, choices=OUTCOME_CHOICES, blank=True)
    retry_count = models.IntegerField(default=0)
    last_error = models.TextField(blank=True)
    error_code = models.CharField(max_length=50, blank=True)

    # Blockchain details
    tx_hash = models.CharField(max_length=100, blank=True, db_index=True)
    token_id = models.BigIntegerField(null=True, blank=True)
    via_fallback = models.BooleanField(default=False, help_text="True if the operator paid for direct submission")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['sender', 'status'], name='membership__sender_4f1c2a_idx'),
        ]
        ordering = ['-created_at']

    def __str__(self):
        return f"Attempt {self.request_id[:8]}... ({self.status})"

    @property
    def is_terminal(self):
        return self.status in ('confirmed', 'failed')


class RegistryEntry(models.Model):
    """Off-chain mirror of an on-chain membership; never the source of truth"""
    token_id = models.BigIntegerField(unique=True, db_index=True)
    owner = models.CharField(max_length=100, db_index=True)
    minted_at = models.DateTimeField()
    payout_amount = models.BigIntegerField(null=True, blank=True, help_text="Initial grant in micro-units")
    is_active = models.BooleanField(default=True)
    metadata = models.JSONField(default=dict, blank=True)

    block_number = models.BigIntegerField(default=0)
    tx_hash = models.CharField(max_length=100, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    synced_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['owner', 'is_active'], name='membership__owner_8d2e61_idx'),
            models.Index(fields=['block_number'], name='membership__block_n_c93b07_idx'),
        ]
        ordering = ['token_id']

    def __str__(self):
        return f"Membership #{self.token_id} -> {self.owner[:10]}..."


class ProcessedMembershipEvent(models.Model):
    """Idempotency guard for membership events delivered at-least-once."""
    tx_hash = models.CharField(max_length=100, db_index=True)
    log_index = models.IntegerField(default=0)
    event_name = models.CharField(max_length=50)
    token_id = models.BigIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('tx_hash', 'log_index')]

    def __str__(self):
        return f"{self.event_name} {self.tx_hash[:10]}...:{self.log_index}"


class RegistryCursor(models.Model):
    """Per-stream cursor for registry backfill scans."""
    stream = models.CharField(max_length=50, unique=True)
    last_scanned_block = models.BigIntegerField(default=-1)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.stream} @ {self.last_scanned_block}"


# ----------------------------------------------------------------------
# Ledger state: the on-chain side, shared by every worker and web process
# ----------------------------------------------------------------------

class LedgerContract(models.Model):
    """Deployed membership contract with its counter and payout treasury"""
    address = models.CharField(max_length=100, unique=True)
    admin = models.CharField(max_length=100)
    next_token_id = models.BigIntegerField(default=0)

    treasury_balance = models.BigIntegerField(default=0, help_text="Payout pool in micro-units")
    payout_amount = models.BigIntegerField(help_text="Initial grant per membership in micro-units")
    low_balance_threshold = models.BigIntegerField(default=0)
    below_threshold = models.BooleanField(default=False, help_text="Side of the threshold last reported to listeners")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.address} (next token {self.next_token_id})"


class LedgerMembership(models.Model):
    """Canonical membership record; the registry mirrors these"""
    contract = models.ForeignKey(LedgerContract, on_delete=models.CASCADE, related_name='memberships')
    token_id = models.BigIntegerField()
    owner = models.CharField(max_length=100)
    minted_at = models.BigIntegerField(help_text="Block timestamp (unix seconds)")

    class Meta:
        unique_together = [('contract', 'owner'), ('contract', 'token_id')]
        ordering = ['token_id']

    def __str__(self):
        return f"Token #{self.token_id} -> {self.owner[:10]}..."


class LedgerAccount(models.Model):
    """Native balance used for fees and payouts"""
    address = models.CharField(max_length=100, unique=True)
    balance = models.BigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.address[:10]}... = {self.balance}"


class ConsumedNonce(models.Model):
    """Forward-request nonce spent by an executed call"""
    forwarder = models.CharField(max_length=100)
    sender = models.CharField(max_length=100)
    nonce = models.BigIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = [('forwarder', 'sender', 'nonce')]

    def __str__(self):
        return f"{self.sender[:10]}... nonce {self.nonce}"


class LedgerBlock(models.Model):
    """One included transaction, successful or reverted"""
    number = models.BigIntegerField(unique=True)
    tx_hash = models.CharField(max_length=64, unique=True)
    sender = models.CharField(max_length=100)
    fee_payer = models.CharField(max_length=100)
    timestamp = models.BigIntegerField()
    success = models.BooleanField(default=True)
    events = models.JSONField(default=list, blank=True)
    revert_reason = models.CharField(max_length=50, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['number']

    def __str__(self):
        return f"Block {self.number} {self.tx_hash[:10]}... ({'ok' if self.success else self.revert_reason})"
