"""GraphQL documents for model sync.

This module builds the queries, mutations and subscriptions the sync
engine sends for a model. Field names follow the AppSync conventions:

    createPost / updatePost / deletePost     mutations
    syncPosts                                 paginated delta query
    onCreatePost / onUpdatePost / onDeletePost subscriptions
"""

from __future__ import annotations

from syncstore.client.api import GraphQLOperation
from syncstore.core.schema import ModelDefinition
from syncstore.core.types import OpType


def _selection(model: ModelDefinition, indent: str = "    ") -> str:
    return "\n".join(f"{indent}{name}" for name in model.selection_set())


def mutation_field(model: ModelDefinition, operation: OpType) -> str:
    """Get the mutation field name (e.g. "createPost")."""
    return f"{operation.graphql_prefix}{model.name}"


def sync_field(model: ModelDefinition) -> str:
    """Get the sync query field name (e.g. "syncPosts")."""
    return f"sync{model.plural_name}"


def subscription_field(model: ModelDefinition, operation: OpType) -> str:
    """Get the subscription field name (e.g. "onCreatePost")."""
    return f"on{operation.value}{model.name}"


def build_mutation(model: ModelDefinition, operation: OpType) -> str:
    """Build the mutation document for a model operation."""
    field = mutation_field(model, operation)
    return (
        f"mutation operation($input: {operation.value}{model.name}Input!, "
        f"$condition: Model{model.name}ConditionInput) {{\n"
        f"  {field}(input: $input, condition: $condition) {{\n"
        f"{_selection(model)}\n"
        f"  }}\n"
        f"}}"
    )


def build_sync_query(model: ModelDefinition) -> str:
    """Build the paginated sync query document for a model."""
    field = sync_field(model)
    return (
        f"query operation($limit: Int, $nextToken: String, "
        f"$lastSync: AWSTimestamp, $filter: Model{model.name}FilterInput) {{\n"
        f"  {field}(limit: $limit, nextToken: $nextToken, "
        f"lastSync: $lastSync, filter: $filter) {{\n"
        f"    items {{\n"
        f"{_selection(model, '      ')}\n"
        f"    }}\n"
        f"    nextToken\n"
        f"    startedAt\n"
        f"  }}\n"
        f"}}"
    )


def build_subscription(model: ModelDefinition, operation: OpType) -> str:
    """Build the subscription document for one operation kind."""
    field = subscription_field(model, operation)
    return (
        f"subscription operation {{\n"
        f"  {field} {{\n"
        f"{_selection(model)}\n"
        f"  }}\n"
        f"}}"
    )


def sync_operation(
    model: ModelDefinition,
    limit: int,
    next_token: str | None = None,
    last_sync: int | None = None,
    sync_filter: dict | None = None,
) -> GraphQLOperation:
    """Build one page request of a model's sync query."""
    variables: dict = {"limit": limit, "nextToken": next_token, "lastSync": last_sync}
    if sync_filter:
        variables["filter"] = sync_filter
    return GraphQLOperation(
        query=build_sync_query(model),
        variables=variables,
        operation_name="operation",
    )
