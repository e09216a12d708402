"""config URL Configuration

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/stable/topics/http/urls/
"""
from django.contrib import admin
from django.urls import path
from django.views.decorators.csrf import csrf_exempt
from graphene_django.views import GraphQLView

from membership import views as membership_views

from .schema import schema

admin.site.site_header = "Membership Admin"
admin.site.site_title = "Membership Admin Portal"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('graphql/', csrf_exempt(GraphQLView.as_view(graphiql=False, schema=schema))),
    path('ledger/submit', membership_views.submit_forward_request),
    path('ledger/status/<str:tx_hash>', membership_views.transaction_status),
]
