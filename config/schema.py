from membership import schema as membership_schema
import graphene


class Query(membership_schema.Query, graphene.ObjectType):
	pass


schema = graphene.Schema(query=Query)

__all__ = ['schema']
