"""Unit tests for partition tables."""

import pytest

from lza_orchestrator.core.partition import (
    EnvironmentPartition,
    get_global_region,
    get_saml_audience,
    get_sts_endpoint,
)


class TestEnvironmentPartition:
    """Test cases for partition lookups."""

    def test_from_name(self):
        assert EnvironmentPartition.from_name("aws-us-gov") == EnvironmentPartition.GOVCLOUD
        assert EnvironmentPartition.from_name("aws-cn") == EnvironmentPartition.CHINA

    def test_from_name_unknown(self):
        with pytest.raises(ValueError):
            EnvironmentPartition.from_name("aws-moon")

    @pytest.mark.parametrize("partition,region", [
        (EnvironmentPartition.STANDARD, "us-east-1"),
        (EnvironmentPartition.GOVCLOUD, "us-gov-west-1"),
        (EnvironmentPartition.CHINA, "cn-northwest-1"),
    ])
    def test_global_region(self, partition, region):
        assert get_global_region(partition) == region

    def test_sts_endpoint_standard(self):
        assert get_sts_endpoint(EnvironmentPartition.STANDARD, "eu-west-1") == \
            "https://sts.eu-west-1.amazonaws.com"

    def test_sts_endpoint_china(self):
        assert get_sts_endpoint(EnvironmentPartition.CHINA, "cn-north-1") == \
            "https://sts.cn-north-1.amazonaws.com.cn"

    def test_saml_audience_govcloud(self):
        assert get_saml_audience(EnvironmentPartition.GOVCLOUD) == \
            "https://signin.amazonaws-us-gov.com/saml"
