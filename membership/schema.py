"""
Membership GraphQL schema - read API for the dashboard layer
"""
import graphene
from graphene_django import DjangoObjectType

from .models import RegistryEntry
from . import registry


class MembershipType(DjangoObjectType):
    class Meta:
        model = RegistryEntry
        fields = ('token_id', 'owner', 'minted_at', 'payout_amount', 'is_active', 'metadata')


class Query(graphene.ObjectType):
    is_member = graphene.Boolean(address=graphene.String(required=True))
    membership = graphene.Field(MembershipType, address=graphene.String(required=True))

    def resolve_is_member(self, info, address):
        return registry.is_member(address)

    def resolve_membership(self, info, address):
        return registry.get_membership(address)


__all__ = ['Query', 'MembershipType']
