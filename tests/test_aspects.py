"""Unit tests for partition aspects."""

import pytest

from lza_orchestrator.aspects import ConstructTree, apply_aspects
from lza_orchestrator.aspects.graph import Resource
from lza_orchestrator.aspects.rules import rules_for
from lza_orchestrator.core.config import DEFAULT_SOLUTION_ID, AcceleratorSettings
from lza_orchestrator.core.partition import EnvironmentPartition


SAML_TRUST = {
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Principal": {"Federated": "arn:aws:iam::111111111111:saml-provider/Okta"},
        "Action": "sts:AssumeRoleWithSAML",
        "Condition": {"StringEquals": {"SAML:aud": "https://signin.aws.amazon.com/saml"}},
    }],
}


def template(resources):
    return {"AWSTemplateFormatVersion": "2010-09-09", "Resources": resources}


def apply(resources, **settings):
    tree = ConstructTree.from_template("TestStack", template(resources))
    report = apply_aspects(tree, AcceleratorSettings(**settings))
    return tree.to_template(), report


class TestConstructTree:
    """Test cases for ConstructTree."""

    def test_nests_by_cdk_path(self):
        tree = ConstructTree.from_template("TestStack", template({
            "Bucket": {"Type": "AWS::S3::Bucket",
                       "Metadata": {"aws:cdk:path": "TestStack/Logging/Bucket/Resource"}},
            "Key": {"Type": "AWS::KMS::Key"},
        }))

        logging_node = tree.root.children[0]
        assert logging_node.id == "Logging"
        assert logging_node.children[0].id == "Bucket"
        assert tree.find("Key").type == "AWS::KMS::Key"

    def test_template_sections_preserved(self):
        source = template({"Key": {"Type": "AWS::KMS::Key", "DeletionPolicy": "Retain"}})
        source["Outputs"] = {"KeyArn": {"Value": {"Fn::GetAtt": ["Key", "Arn"]}}}

        result = ConstructTree.from_template("TestStack", source).to_template()

        assert result == source

    def test_remove_strips_depends_on(self):
        tree = ConstructTree.from_template("TestStack", template({
            "Role": {"Type": "AWS::IAM::Role"},
            "Function": {"Type": "AWS::Lambda::Function", "DependsOn": ["Role", "Other"]},
            "Other": {"Type": "AWS::SNS::Topic"},
        }))

        tree.remove(["Role"])

        assert tree.find("Role") is None
        assert tree.find("Function").depends_on == ["Other"]


class TestPartitionAspects:
    """Test cases for partition-specific rules."""

    def test_govcloud_log_group(self):
        result, report = apply({
            "Logs": {"Type": "AWS::Logs::LogGroup", "Properties": {
                "KmsKeyId": "arn:key", "Tags": [{"Key": "a", "Value": "b"}], "RetentionInDays": 365,
            }},
        }, partition=EnvironmentPartition.GOVCLOUD)

        assert result["Resources"]["Logs"]["Properties"] == {"RetentionInDays": 365}
        assert report.modified == ["Logs"]

    def test_govcloud_saml_audience(self):
        result, _ = apply({
            "FederatedRole": {"Type": "AWS::IAM::Role", "Properties": {"AssumeRolePolicyDocument": SAML_TRUST}},
        }, partition=EnvironmentPartition.GOVCLOUD)

        statement = result["Resources"]["FederatedRole"]["Properties"]["AssumeRolePolicyDocument"]["Statement"][0]
        assert statement["Condition"]["StringEquals"]["SAML:aud"] == "https://signin.amazonaws-us-gov.com/saml"

    def test_role_without_saml_unchanged(self):
        trust = {"Statement": [{"Effect": "Allow", "Principal": {"Service": "lambda.amazonaws.com"}}]}
        _, report = apply({
            "Role": {"Type": "AWS::IAM::Role", "Properties": {"AssumeRolePolicyDocument": trust}},
        }, partition=EnvironmentPartition.GOVCLOUD)

        assert report.modified == []

    def test_standard_partition_leaves_log_group(self):
        properties = {"KmsKeyId": "arn:key", "RetentionInDays": 365}
        result, report = apply({"Logs": {"Type": "AWS::Logs::LogGroup", "Properties": properties}})

        assert result["Resources"]["Logs"]["Properties"] == properties
        assert report.modified == []

    def test_china_trail(self):
        result, _ = apply({
            "Trail": {"Type": "AWS::CloudTrail::Trail", "Properties": {
                "IsOrganizationTrail": True, "IsLogging": True,
            }},
        }, partition=EnvironmentPartition.CHINA)

        assert result["Resources"]["Trail"]["Properties"] == {"IsLogging": True}

    def test_iso_vpc_endpoint_service_name(self):
        result, _ = apply({
            "S3Endpoint": {"Type": "AWS::EC2::VPCEndpoint", "Properties": {
                "ServiceName": "com.amazonaws.us-iso-east-1.s3",
            }},
        }, partition=EnvironmentPartition.ISO)

        assert result["Resources"]["S3Endpoint"]["Properties"]["ServiceName"] == "gov.ic.c2s.us-iso-east-1.s3"

    @pytest.mark.parametrize("partition", [EnvironmentPartition.ISO, EnvironmentPartition.ISO_B])
    @pytest.mark.parametrize("resource_type,properties,kept", [
        ("AWS::EC2::FlowLog",
         {"LogFormat": "${version}", "Tags": [], "MaxAggregationInterval": 60, "TrafficType": "ALL"},
         {"TrafficType": "ALL"}),
        ("AWS::S3::Bucket",
         {"PublicAccessBlockConfiguration": {}, "OwnershipControls": {}, "BucketName": "logs"},
         {"BucketName": "logs"}),
        ("AWS::CloudTrail::Trail",
         {"InsightSelectors": [], "IsOrganizationTrail": True, "IsLogging": True},
         {"IsLogging": True}),
        ("AWS::Logs::LogGroup",
         {"KmsKeyId": "arn:key", "RetentionInDays": 365},
         {"RetentionInDays": 365}),
    ])
    def test_iso_unsupported_properties_removed(self, partition, resource_type, properties, kept):
        result, report = apply({"Resource": {"Type": resource_type, "Properties": properties}},
                               partition=partition)

        assert result["Resources"]["Resource"]["Properties"] == kept
        assert report.modified == ["Resource"]

    @pytest.mark.parametrize("partition,audience", [
        (EnvironmentPartition.ISO, "https://signin.c2shome.ic.gov/saml"),
        (EnvironmentPartition.ISO_B, "https://signin.sc2shome.sgov.gov/saml"),
        (EnvironmentPartition.CHINA, "https://signin.amazonaws.cn/saml"),
    ])
    def test_partition_saml_audience(self, partition, audience):
        result, _ = apply({
            "FederatedRole": {"Type": "AWS::IAM::Role", "Properties": {"AssumeRolePolicyDocument": SAML_TRUST}},
        }, partition=partition)

        statement = result["Resources"]["FederatedRole"]["Properties"]["AssumeRolePolicyDocument"]["Statement"][0]
        assert statement["Condition"]["StringEquals"]["SAML:aud"] == audience

    def test_source_template_not_mutated(self):
        source = template({
            "Logs": {"Type": "AWS::Logs::LogGroup", "Properties": {"KmsKeyId": "arn:key"}},
        })

        tree = ConstructTree.from_template("TestStack", source)
        apply_aspects(tree, AcceleratorSettings(partition=EnvironmentPartition.GOVCLOUD))

        assert source["Resources"]["Logs"]["Properties"] == {"KmsKeyId": "arn:key"}


class TestGlobalAspects:
    """Test cases for rules applied in every partition."""

    def test_lambda_default_memory_raised(self):
        result, _ = apply({
            "Function": {"Type": "AWS::Lambda::Function", "Properties": {"Runtime": "python3.12"}},
            "Small": {"Type": "AWS::Lambda::Function", "Properties": {"MemorySize": 128}},
        })

        assert result["Resources"]["Function"]["Properties"]["MemorySize"] == 512
        assert result["Resources"]["Small"]["Properties"]["MemorySize"] == 512

    def test_lambda_above_floor_unchanged(self):
        result, report = apply({
            "Function": {"Type": "AWS::Lambda::Function", "Properties": {
                "MemorySize": 1024, "Environment": {"Variables": {"SOLUTION_ID": DEFAULT_SOLUTION_ID}},
            }},
        })

        assert result["Resources"]["Function"]["Properties"]["MemorySize"] == 1024
        assert report.modified == []

    @pytest.mark.parametrize("memory", [{"Ref": "FunctionMemory"}, "1024", "256"])
    def test_lambda_non_literal_memory_unchanged(self, memory):
        result, _ = apply({
            "Function": {"Type": "AWS::Lambda::Function", "Properties": {"MemorySize": memory}},
        })

        assert result["Resources"]["Function"]["Properties"]["MemorySize"] == memory

    def test_lambda_solution_id_set(self):
        result, _ = apply({
            "Function": {"Type": "AWS::Lambda::Function", "Properties": {
                "MemorySize": 1024, "Environment": {"Variables": {"LOG_LEVEL": "INFO"}},
            }},
            "Bare": {"Type": "AWS::Lambda::Function", "Properties": {"MemorySize": 1024}},
        }, solution_id="AwsSolution/SO0199/1.2.3")

        variables = result["Resources"]["Function"]["Properties"]["Environment"]["Variables"]
        assert variables == {"LOG_LEVEL": "INFO", "SOLUTION_ID": "AwsSolution/SO0199/1.2.3"}
        bare = result["Resources"]["Bare"]["Properties"]["Environment"]["Variables"]
        assert bare == {"SOLUTION_ID": "AwsSolution/SO0199/1.2.3"}

    def test_service_linked_role_retained(self):
        result, _ = apply({
            "Slr": {"Type": "AWS::IAM::ServiceLinkedRole", "Properties": {"AWSServiceName": "config.amazonaws.com"}},
        })

        assert result["Resources"]["Slr"]["DeletionPolicy"] == "Retain"
        assert result["Resources"]["Slr"]["UpdateReplacePolicy"] == "Retain"


class TestExistingRoles:
    """Test cases for existing-roles mode."""

    def test_iam_resources_pruned_and_references_rewritten(self):
        result, report = apply({
            "FunctionRole": {"Type": "AWS::IAM::Role"},
            "FunctionPolicy": {"Type": "AWS::IAM::Policy", "DependsOn": "FunctionRole"},
            "Function": {
                "Type": "AWS::Lambda::Function",
                "Properties": {"MemorySize": 1024, "Role": {"Fn::GetAtt": ["FunctionRole", "Arn"]}},
                "DependsOn": ["FunctionRole", "FunctionPolicy"],
            },
        }, use_existing_roles=True, existing_roles={"lambda": "PlatformLambdaRole"})

        assert sorted(report.pruned) == ["FunctionPolicy", "FunctionRole"]
        function = result["Resources"]["Function"]
        assert "DependsOn" not in function
        assert function["Properties"]["Role"] == {
            "Fn::Sub": "arn:${AWS::Partition}:iam::${AWS::AccountId}:role/PlatformLambdaRole"
        }
        assert set(result["Resources"]) == {"Function"}

    def test_rules_only_when_enabled(self):
        assert rules_for("AWS::IAM::Role", AcceleratorSettings()) == ()

    def test_instance_profile_substituted(self):
        result, _ = apply({
            "Instance": {"Type": "AWS::EC2::Instance", "Properties": {"IamInstanceProfile": {"Ref": "Profile"}}},
            "Profile": {"Type": "AWS::IAM::InstanceProfile"},
        }, use_existing_roles=True)

        assert result["Resources"]["Instance"]["Properties"]["IamInstanceProfile"] == "AWSAccelerator-InstanceProfile"


class TestResource:
    """Test cases for Resource."""

    def test_depends_on_string_normalized(self):
        resource = Resource.from_template("A", {"Type": "AWS::SNS::Topic", "DependsOn": "B"})

        assert resource.depends_on == ["B"]
