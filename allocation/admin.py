"""
Django admin registrations for the allocation models.

Statuses are read-only here: every status change has to go through the
allocation coordinator so that cascades and the transition log stay
consistent.
"""

from django.contrib import admin

from .models import (
    Compatibility,
    Donor,
    Institution,
    Organ,
    Receiver,
    StatusTransition,
    TransplantProcedure,
    Transportation,
)


@admin.register(Institution)
class InstitutionAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'license_number', 'phone', 'created_at')
    search_fields = ('id', 'name', 'license_number')


@admin.register(Donor)
class DonorAdmin(admin.ModelAdmin):
    list_display = ('id', 'first_name', 'last_name', 'blood_type', 'date_of_birth', 'consent_status')
    list_filter = ('blood_type', 'consent_status')
    search_fields = ('id', 'first_name', 'last_name')


@admin.register(Organ)
class OrganAdmin(admin.ModelAdmin):
    list_display = ('id', 'type', 'donor', 'condition', 'status', 'expiration_date')
    list_filter = ('status', 'type', 'condition')
    search_fields = ('id', 'donor__last_name', 'storage_location')
    readonly_fields = ('status',)


@admin.register(Receiver)
class ReceiverAdmin(admin.ModelAdmin):
    list_display = ('id', 'first_name', 'last_name', 'blood_type', 'urgency_status', 'status', 'registration_date')
    list_filter = ('status', 'blood_type', 'urgency_status')
    search_fields = ('id', 'first_name', 'last_name')
    readonly_fields = ('status',)


@admin.register(Compatibility)
class CompatibilityAdmin(admin.ModelAdmin):
    list_display = ('id', 'organ', 'receiver', 'compatibility_score', 'status', 'match_date')
    list_filter = ('status',)
    search_fields = ('id', 'organ__id', 'receiver__last_name')
    readonly_fields = ('status', 'compatibility_score', 'match_date')


@admin.register(Transportation)
class TransportationAdmin(admin.ModelAdmin):
    list_display = ('id', 'organ', 'origin_institution', 'destination_institution', 'transport_method', 'status')
    list_filter = ('status', 'transport_method')
    search_fields = ('id', 'tracking_number', 'transport_company')
    readonly_fields = ('status', 'actual_arrival_time')


@admin.register(TransplantProcedure)
class TransplantProcedureAdmin(admin.ModelAdmin):
    list_display = ('id', 'compatibility', 'institution', 'status', 'outcome', 'scheduled_date')
    list_filter = ('status', 'outcome')
    search_fields = ('id', 'receiver__last_name')
    readonly_fields = ('status', 'outcome')


@admin.register(StatusTransition)
class StatusTransitionAdmin(admin.ModelAdmin):
    list_display = ('entity', 'entity_id', 'from_status', 'to_status', 'reason', 'timestamp')
    list_filter = ('entity', 'to_status')
    search_fields = ('entity_id', 'reason')
