"""AWS partition metadata.

The partition is derived once at startup from configuration and drives
STS endpoint selection, the global region used for organization-wide
stacks and which resource mutation rules the aspect visitor installs.
"""

from enum import Enum


class EnvironmentPartition(Enum):
    """Top-level AWS isolation boundary the landing zone is deployed to."""

    STANDARD = "aws"
    GOVCLOUD = "aws-us-gov"
    ISO = "aws-iso"
    ISO_B = "aws-iso-b"
    ISO_E = "aws-iso-e"
    ISO_F = "aws-iso-f"
    CHINA = "aws-cn"

    @classmethod
    def from_name(cls, name: str) -> "EnvironmentPartition":
        """Resolve a partition from its ARN name (e.g. ``aws-us-gov``).

        Args:
            name: Partition name as it appears in ARNs

        Returns:
            Matching partition member

        Raises:
            ValueError: When the name is not a known partition
        """
        for member in cls:
            if member.value == name:
                return member
        raise ValueError(f"Unknown AWS partition: {name}")

    @property
    def arn_name(self) -> str:
        return self.value


GLOBAL_REGIONS = {
    EnvironmentPartition.GOVCLOUD: "us-gov-west-1",
    EnvironmentPartition.ISO: "us-iso-east-1",
    EnvironmentPartition.ISO_B: "us-isob-east-1",
    EnvironmentPartition.CHINA: "cn-northwest-1",
}

STS_ENDPOINT_SUFFIXES = {
    EnvironmentPartition.CHINA: "amazonaws.com.cn",
    EnvironmentPartition.ISO: "c2s.ic.gov",
    EnvironmentPartition.ISO_B: "sc2s.sgov.gov",
    EnvironmentPartition.ISO_E: "cloud.adc-e.uk",
    EnvironmentPartition.ISO_F: "csp.hci.ic.gov",
}

SAML_AUDIENCES = {
    EnvironmentPartition.STANDARD: "https://signin.aws.amazon.com/saml",
    EnvironmentPartition.GOVCLOUD: "https://signin.amazonaws-us-gov.com/saml",
    EnvironmentPartition.ISO: "https://signin.c2shome.ic.gov/saml",
    EnvironmentPartition.ISO_B: "https://signin.sc2shome.sgov.gov/saml",
    EnvironmentPartition.CHINA: "https://signin.amazonaws.cn/saml",
}


def get_global_region(partition: EnvironmentPartition) -> str:
    """Region hosting global services (IAM, Organizations) for a partition."""
    return GLOBAL_REGIONS.get(partition, "us-east-1")


def get_sts_endpoint(partition: EnvironmentPartition, region: str) -> str:
    """Regional STS endpoint URL for a partition.

    Args:
        partition: Target partition
        region: Region the STS call is made in

    Returns:
        HTTPS endpoint URL
    """
    suffix = STS_ENDPOINT_SUFFIXES.get(partition, "amazonaws.com")
    return f"https://sts.{region}.{suffix}"


def get_saml_audience(partition: EnvironmentPartition) -> str:
    return SAML_AUDIENCES.get(partition, SAML_AUDIENCES[EnvironmentPartition.STANDARD])
