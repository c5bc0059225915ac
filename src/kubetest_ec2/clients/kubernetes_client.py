"""Kubernetes client for checks against the freshly built cluster."""

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1Node, V1Pod

from kubetest_ec2.core.exceptions import KubernetesError
from kubetest_ec2.utils.logging import get_logger

logger = get_logger(__name__)


class KubernetesClient:
    """Kubernetes client bound to one kubeconfig file."""

    def __init__(self, kubeconfig_path: str, context: str | None = None):
        """Initialize Kubernetes client.

        Args:
            kubeconfig_path: Path to kubeconfig file
            context: Kubernetes context to use (optional)

        Raises:
            KubernetesError: If the kubeconfig cannot be loaded
        """
        try:
            api_client = config.new_client_from_config(
                config_file=kubeconfig_path, context=context
            )
        except Exception as e:
            logger.error("k8s_client_initialization_failed", error=str(e))
            raise KubernetesError(f"Failed to load kubeconfig {kubeconfig_path}: {e}") from e

        self.kubeconfig_path = kubeconfig_path
        self.core_v1 = client.CoreV1Api(api_client)
        logger.debug("k8s_client_initialized", kubeconfig=kubeconfig_path)

    def get_nodes(self) -> list[V1Node]:
        """Get all nodes in the cluster.

        Raises:
            KubernetesError: If nodes cannot be retrieved
        """
        try:
            return list(self.core_v1.list_node().items)
        except ApiException as e:
            logger.error("get_nodes_failed", status=e.status, reason=e.reason)
            raise KubernetesError(f"Failed to get nodes: {e.reason}") from e
        except Exception as e:
            # connection refused and TLS errors surface as urllib3 exceptions
            raise KubernetesError(f"Failed to get nodes: {e}") from e

    def node_names(self) -> list[str]:
        """Names of all registered nodes."""
        return [node.metadata.name for node in self.get_nodes()]

    def check_nodes_ready(self) -> tuple[bool, list[str]]:
        """Check if all nodes are in Ready state.

        Returns:
            Tuple of (all_ready, unready node names)
        """
        unready_nodes = []
        for node in self.get_nodes():
            ready = False
            for condition in node.status.conditions or []:
                if condition.type == "Ready":
                    ready = condition.status == "True"
                    break
            if not ready:
                unready_nodes.append(node.metadata.name)

        logger.info("nodes_ready_check", unready_count=len(unready_nodes))
        return len(unready_nodes) == 0, unready_nodes

    def get_pods(self, namespace: str, label_selector: str | None = None) -> list[V1Pod]:
        """Get pods in a namespace.

        Raises:
            KubernetesError: If pods cannot be retrieved
        """
        try:
            response = self.core_v1.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector
            )
            return list(response.items)
        except ApiException as e:
            logger.error("get_pods_failed", namespace=namespace, status=e.status, reason=e.reason)
            raise KubernetesError(f"Failed to get pods in {namespace}: {e.reason}") from e
        except Exception as e:
            raise KubernetesError(f"Failed to get pods in {namespace}: {e}") from e

    def check_pods_ready(self, namespace: str, label_selector: str) -> bool:
        """Whether at least one pod matches and every matching pod is Ready."""
        pods = self.get_pods(namespace, label_selector)
        if not pods:
            return False
        for pod in pods:
            conditions = pod.status.conditions or []
            if not any(c.type == "Ready" and c.status == "True" for c in conditions):
                return False
        return True
