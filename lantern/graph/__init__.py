"""Page dependency graph: network and CPU nodes plus their construction."""

from .builder import PageURL, create_graph, get_cpu_nodes, get_network_node_output, prune_node
from .nodes import (
    CPUNode,
    NetworkNode,
    Node,
    NodeType,
    add_dependency,
    all_nodes,
    clone_with_relationships,
    depends_on,
    find_cycle,
    remove_dependency,
    root_of,
    to_networkx,
    traverse,
)
from .requests import (
    RequestArena,
    build_requests,
    choose_initiator_request,
    expand_redirects,
    get_network_initiators,
)

__all__ = [
    "CPUNode",
    "NetworkNode",
    "Node",
    "NodeType",
    "PageURL",
    "RequestArena",
    "add_dependency",
    "all_nodes",
    "build_requests",
    "choose_initiator_request",
    "clone_with_relationships",
    "create_graph",
    "depends_on",
    "expand_redirects",
    "find_cycle",
    "get_cpu_nodes",
    "get_network_initiators",
    "get_network_node_output",
    "prune_node",
    "remove_dependency",
    "root_of",
    "to_networkx",
    "traverse",
]
