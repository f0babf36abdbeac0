"""
受管资源的标签约定。

CSR 资源与 Secret 都通过这些标签标记归属；归属判断只看 namespace、managed-by、instance 三项。
"""

from typing import Dict

from src.server.config import config

NAMESPACE_LABEL_KEY = "app.kubernetes.io/namespace"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"
INSTANCE_LABEL_KEY = "app.kubernetes.io/instance"
COMPONENT_LABEL_KEY = "app.kubernetes.io/component"


def csr_labels(namespace: str, instance: str) -> Dict[str, str]:
    """CSR 资源的归属标签。"""
    return {
        NAMESPACE_LABEL_KEY: namespace,
        MANAGED_BY_LABEL_KEY: config.managed_by,
        INSTANCE_LABEL_KEY: instance,
    }


def secret_labels(namespace: str, instance: str, component: str) -> Dict[str, str]:
    """Credential Secret 的标签，在 CSR 标签基础上附加 component。"""
    labels = csr_labels(namespace, instance)
    labels[COMPONENT_LABEL_KEY] = component
    return labels


def is_owned_by(labels: Dict[str, str] | None, namespace: str, instance: str) -> bool:
    """判断资源标签是否表明其由本控制器为该实例创建。"""
    labels = labels or {}
    return (
        labels.get(NAMESPACE_LABEL_KEY) == namespace
        and labels.get(MANAGED_BY_LABEL_KEY) == config.managed_by
        and labels.get(INSTANCE_LABEL_KEY) == instance
    )
