import os

from specmon.common import get_logger, relative_posix_path
from specmon.dependency_graph import DependencyGraph, scan_project

logger = get_logger(__name__)

# networkx and pyvis are optional dependencies for graph export
# They are imported lazily to avoid import errors
# when users don't have them installed


def _require_networkx():
    try:
        import networkx as nx
    except ImportError as e:
        raise ImportError(
            "Graph export requires optional dependencies. "
            "Install with: pip install pytest-specmon[graph]"
        ) from e
    return nx


def to_networkx(graph: DependencyGraph):
    """Spec modules and the local helpers they reach as a ``networkx.DiGraph``."""
    nx = _require_networkx()
    G = nx.DiGraph()
    for module in graph.spec_modules:
        graph.dependencies_of(module)  # make sure every reachable helper has its edges loaded
        G.add_node(relative_posix_path(module, graph.rootdir), type="spec", title="Spec module")
    for module, dependency in graph.edges():
        source = relative_posix_path(module, graph.rootdir)
        target = relative_posix_path(dependency, graph.rootdir)
        if target not in G:
            G.add_node(target, type="helper", title="Helper module")
        if source not in G:
            G.add_node(source, type="helper", title="Helper module")
        G.add_edge(source, target)
    return G


def generate_graph(root_dir, output_file="spec_dependency_graph.html", spec_glob="*_spec.py"):
    nx = _require_networkx()
    try:
        from pyvis.network import Network
    except ImportError as e:
        logger.error(
            "Graph generation requires 'networkx' and 'pyvis' packages. "
            "Install them with: pip install networkx pyvis"
        )
        raise ImportError(
            "Graph generation requires optional dependencies. "
            "Install with: pip install pytest-specmon[graph]"
        ) from e

    logger.info(f"Scanning project at {root_dir}.")
    graph = DependencyGraph.build(root_dir, scan_project(root_dir, spec_glob))

    logger.info("Building graph...")
    G = to_networkx(graph)
    for node in G.nodes():
        if G.nodes[node].get("type") == "spec":
            G.nodes[node]["color"] = "#97c2fc"
            G.nodes[node]["size"] = 20
        else:
            G.nodes[node]["color"] = "#ffb7b2"
            G.nodes[node]["shape"] = "box"
    logger.info(f"{G.number_of_nodes()} modules, {nx.number_of_edges(G)} imports.")

    net = Network(height="750px", width="100%", bgcolor="#222222", font_color="white", select_menu=True, cdn_resources="in_line")
    net.from_nx(G)
    net.show_buttons(filter_=["physics"])

    output_path = os.path.join(root_dir, output_file)
    net.save_graph(output_path)
    return output_path
