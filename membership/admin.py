from django.contrib import admin
from .models import (
    LedgerBlock, LedgerContract, LedgerMembership,
    ProcessedMembershipEvent, RegistryCursor, RegistryEntry, TransactionAttempt,
)


@admin.register(TransactionAttempt)
class TransactionAttemptAdmin(admin.ModelAdmin):
    list_display = ['request_id', 'sender', 'nonce', 'status', 'outcome', 'retry_count', 'via_fallback', 'created_at']
    list_filter = ['status', 'outcome', 'via_fallback', 'created_at']
    search_fields = ['request_id', 'sender', 'tx_hash']
    readonly_fields = ['created_at', 'updated_at', 'completed_at']
    ordering = ['-created_at']


@admin.register(RegistryEntry)
class RegistryEntryAdmin(admin.ModelAdmin):
    list_display = ['token_id', 'owner', 'minted_at', 'payout_amount', 'is_active', 'block_number', 'synced_at']
    list_filter = ['is_active', 'minted_at']
    search_fields = ['owner', 'tx_hash']
    readonly_fields = ['token_id', 'owner', 'minted_at', 'block_number', 'tx_hash', 'created_at', 'synced_at']
    ordering = ['token_id']


@admin.register(ProcessedMembershipEvent)
class ProcessedMembershipEventAdmin(admin.ModelAdmin):
    list_display = ['tx_hash', 'log_index', 'event_name', 'token_id', 'created_at']
    list_filter = ['event_name', 'created_at']
    search_fields = ['tx_hash']
    ordering = ['-created_at']


@admin.register(RegistryCursor)
class RegistryCursorAdmin(admin.ModelAdmin):
    list_display = ['stream', 'last_scanned_block', 'updated_at']
    actions = ['reset_cursors']

    def reset_cursors(self, request, queryset):
        updated = queryset.update(last_scanned_block=-1)
        self.message_user(request, f"Reset {updated} cursor(s).")
    reset_cursors.short_description = "Reset selected cursors"


@admin.register(LedgerContract)
class LedgerContractAdmin(admin.ModelAdmin):
    list_display = ['address', 'admin', 'next_token_id', 'treasury_balance', 'payout_amount',
                    'low_balance_threshold', 'below_threshold', 'updated_at']
    readonly_fields = ['address', 'next_token_id', 'treasury_balance', 'below_threshold', 'created_at', 'updated_at']


@admin.register(LedgerMembership)
class LedgerMembershipAdmin(admin.ModelAdmin):
    list_display = ['token_id', 'owner', 'contract', 'minted_at']
    search_fields = ['owner']
    readonly_fields = ['contract', 'token_id', 'owner', 'minted_at']


@admin.register(LedgerBlock)
class LedgerBlockAdmin(admin.ModelAdmin):
    list_display = ['number', 'tx_hash', 'sender', 'fee_payer', 'success', 'revert_reason', 'timestamp']
    list_filter = ['success', 'revert_reason']
    search_fields = ['tx_hash', 'sender']
    ordering = ['-number']
