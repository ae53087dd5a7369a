"""
keel.blueprints.karpenter — EKS test cluster with Karpenter.

    vpc ─────────────┐
    masters-role ────┴─ cluster ─┬─ KarpenterResourcesStack (template)
                                 │        │
                                 │        ├─ KarpenterControllerRole
                                 │        └─ aws-auth
                                 │
                                 └─ karpenter (helm) ─ DefaultProvisionerAndNodeTemplate

The controller role trusts the cluster's OIDC provider. Its trust
conditions are keyed by the issuer URL, which only exists once the
cluster does, so the keys are tokens resolved at deploy time.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from keel.blueprint.base import Blueprint, BlueprintError
from keel.core.graph import ResourceGraph
from keel.core.node import NodeKind, ResourceNode
from keel.core.token import Join
from keel.stack.composer import StackComposer
from keel.stack.engine import Composition
from keel.stack.template import include_template

RESOURCES_STACK = "KarpenterResourcesStack"
SERVICE_ACCOUNT = "system:serviceaccount:karpenter:karpenter"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# REUSABLE COMPONENTS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def vpc_node(name: str, values: dict[str, Any], id: str = "vpc") -> ResourceNode:
    """VPC with one public and one private subnet group per zone."""
    mask = int(values.get("cidrMask", 20))
    return ResourceNode(
        id=id,
        kind=NodeKind.NETWORK,
        inputs={
            "name": name,
            "cidr": values.get("cidr", "10.18.0.0/18"),
            "max_azs": int(values.get("maxAzs", 2)),
            "subnets": [
                {"name": "public", "type": "public", "cidr_mask": mask},
                {"name": "private", "type": "private-with-egress", "cidr_mask": mask},
            ],
            "tags": {"Name": name},
        },
    )


def masters_role_node(name: str, id: str = "masters-role") -> ResourceNode:
    """Cluster admin role assumable by EKS and by the account root."""
    return ResourceNode(
        id=id,
        kind=NodeKind.IDENTITY_BINDING,
        inputs={
            "role_name": f"{name}-masters",
            "path": "/",
            "assume_role_policy": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"Service": "eks.amazonaws.com"},
                        "Action": "sts:AssumeRole",
                    },
                    {
                        "Effect": "Allow",
                        "Principal": {"AWS": "account-root"},
                        "Action": "sts:AssumeRole",
                    },
                ],
            },
            "managed_policies": ["AmazonEKSClusterPolicy"],
        },
    )


def cluster_node(
    name: str,
    vpc: ResourceNode,
    masters_role: ResourceNode,
    values: dict[str, Any],
    id: str = "cluster",
) -> ResourceNode:
    version = str(values.get("version", "1.27"))
    return ResourceNode(
        id=id,
        kind=NodeKind.CLUSTER,
        inputs={
            "name": name,
            "version": version,
            "vpc_id": vpc.ref("id"),
            "subnet_ids": vpc.ref("private_subnets"),
            "masters_role_arn": masters_role.ref("arn"),
            "kubectl_layer": f"kubectl-v{version.replace('.', '')}",
            "default_capacity": int(values.get("capacity", 2)),
            "default_capacity_instance": values.get("instanceType", "m5.large"),
        },
    )


def controller_role_node(cluster: ResourceNode, id: str = "KarpenterControllerRole") -> ResourceNode:
    """IRSA role of the Karpenter controller's service account."""
    issuer = cluster.ref("oidc_issuer")
    cluster_name = cluster.ref("name")
    return ResourceNode(
        id=id,
        kind=NodeKind.IDENTITY_BINDING,
        inputs={
            "role_name": f"{cluster_name}-karpenter",
            "path": "/",
            "assume_role_policy": {
                "Version": "2012-10-17",
                "Statement": [{
                    "Effect": "Allow",
                    "Principal": {"Federated": cluster.ref("oidc_provider_arn")},
                    "Action": "sts:AssumeRoleWithWebIdentity",
                    "Condition": {
                        "StringEquals": {
                            f"{issuer}:aud": "sts.amazonaws.com",
                            f"{issuer}:sub": SERVICE_ACCOUNT,
                        },
                    },
                }],
            },
            "managed_policies": [f"KarpenterControllerPolicy-{cluster_name}"],
        },
    )


def aws_auth_node(cluster: ResourceNode, id: str = "aws-auth") -> ResourceNode:
    """Maps the Karpenter node role into the cluster's aws-auth ConfigMap."""
    cluster_name = cluster.ref("name")
    account = cluster.ref("account")
    return ResourceNode(
        id=id,
        kind=NodeKind.IDENTITY_BINDING,
        inputs={
            "name": "aws-auth",
            "namespace": "kube-system",
            "cluster": cluster_name,
            "role_mappings": [{
                "rolearn": f"arn:aws:iam::{account}:role/KarpenterNodeRole-{cluster_name}",
                "username": "system:node:{{EC2PrivateDNSName}}",
                "groups": ["system:bootstrappers", "system:nodes"],
            }],
        },
    )


def karpenter_chart_node(
    cluster: ResourceNode,
    controller_role: ResourceNode,
    version: str,
    values: dict[str, Any],
    id: str = "karpenter",
) -> ResourceNode:
    cluster_name = cluster.ref("name")
    cpu = values.get("cpu", 1)
    memory = values.get("memory", "1Gi")
    return ResourceNode(
        id=id,
        kind=NodeKind.CHART_RELEASE,
        inputs={
            "cluster": cluster_name,
            "release": "karpenter",
            "chart": "karpenter",
            "repository": "oci://public.ecr.aws/karpenter/karpenter",
            "version": version,
            "namespace": "karpenter",
            "create_namespace": True,
            "wait": True,
            "values": {
                "serviceAccount": {
                    "name": "karpenter",
                    "annotations": {
                        "eks.amazonaws.com/role-arn": controller_role.ref("arn"),
                    },
                },
                "settings": {
                    "aws": {
                        "clusterName": cluster_name,
                        "defaultInstanceProfile": f"KarpenterNodeInstanceProfile-{cluster_name}",
                        "interruptionQueueName": cluster_name,
                    },
                },
                "controller": {
                    "resources": {
                        "requests": {"cpu": cpu, "memory": memory},
                        "limits": {"cpu": cpu, "memory": memory},
                    },
                },
            },
        },
    )


def node_pool_node(
    cluster: ResourceNode,
    vpc: ResourceNode,
    values: dict[str, Any],
    id: str = "DefaultProvisionerAndNodeTemplate",
) -> ResourceNode:
    """Default EC2NodeClass and NodePool."""
    node_class = {
        "apiVersion": "karpenter.k8s.aws/v1beta1",
        "kind": "EC2NodeClass",
        "metadata": {"name": "default"},
        "spec": {
            "amiFamily": values.get("amiFamily", "AL2"),
            "role": f"KarpenterNodeRole-{cluster.ref('name')}",
            "subnetSelectorTerms": [{
                "tags": {"Name": Join(",", vpc.ref("public_subnets"))},
            }],
            "securityGroupSelectorTerms": [{
                "id": cluster.ref("security_group_id"),
            }],
        },
    }
    node_pool = {
        "apiVersion": "karpenter.sh/v1beta1",
        "kind": "NodePool",
        "metadata": {"name": "default"},
        "spec": {
            "template": {
                "spec": {
                    "nodeClassRef": {"name": "default"},
                    "requirements": [{
                        "key": "karpenter.sh/capacity-type",
                        "operator": "In",
                        "values": list(values.get("capacityTypes", ["spot"])),
                    }],
                },
            },
            "disruption": {"consolidationPolicy": "WhenUnderutilized"},
            "limits": {"cpu": str(values.get("cpuLimit", "1000"))},
        },
    }
    return ResourceNode(
        id=id,
        kind=NodeKind.MANIFEST,
        inputs={
            "name": "default-node-pool",
            "cluster": cluster.ref("name"),
            "documents": [node_class, node_pool],
        },
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BLUEPRINT CLASS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class KarpenterBlueprint(Blueprint):
    name = "karpenter"
    version = "0.32.0"
    description = "EKS test cluster with the Karpenter autoscaler"

    def template_dir(self, values: dict[str, Any]) -> Path:
        configured = values.get("templateDir")
        if configured:
            return Path(configured)
        base = self.module_dir()
        if base is None:
            raise BlueprintError("Cannot locate the bundled Karpenter templates")
        return base / "templates"

    def build(self, values: dict[str, Any]) -> Composition:
        v = values
        name = v.get("name", "karpenter-test")
        version = str(v.get("karpenterVersion", "v0.32.0"))

        template = self.template_dir(v) / f"karpenter_{version}.yaml"
        if not template.exists():
            raise BlueprintError(
                f"No Karpenter template for version {version}: {template}"
            )

        graph = ResourceGraph(name)
        composer = StackComposer(name)

        vpc = graph.add(vpc_node(name, v.get("vpc", {})))
        masters_role = graph.add(masters_role_node(name))
        cluster = graph.add(cluster_node(name, vpc, masters_role, v.get("cluster", {})))

        # Nested stack: the Karpenter CloudFormation template
        composer.declare(RESOURCES_STACK, {"ClusterName": cluster.ref("name")})
        params = composer.parameters(RESOURCES_STACK)
        graph.add(include_template(
            template,
            {"ClusterName": params["ClusterName"]},
            id="KarpenterResources",
            stack=RESOURCES_STACK,
        ))

        controller_role = graph.add(controller_role_node(cluster))
        aws_auth = graph.add(aws_auth_node(cluster))
        karpenter = graph.add(karpenter_chart_node(
            cluster, controller_role, version, v.get("controller", {}),
        ))
        node_pool = graph.add(node_pool_node(cluster, vpc, v.get("nodePool", {})))

        stacks = composer.compose(graph)

        # The template creates the node role and the controller policy
        resources_done = composer.exit_of(RESOURCES_STACK)
        graph.add_edge(controller_role.id, resources_done, soft=True)
        graph.add_edge(aws_auth.id, resources_done, soft=True)
        graph.add_edge(node_pool.id, karpenter.id, soft=True)

        return Composition(graph=graph, stacks=stacks)
