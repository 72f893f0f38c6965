"""IAM role authentication via STS assume role."""

import logging
import re
from datetime import timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from ..core.exceptions import AuthenticationError
from ..services.models import Provider, StoredCredential


logger = logging.getLogger(__name__)

ROLE_ARN_PATTERN = re.compile(r'^arn:aws:iam::(\d{12}):role/[a-zA-Z0-9+=,.@_/-]+$')

SESSION_NAME_PREFIX = 'CloudDowntime'


def extract_account_id(role_arn: str) -> str:
    """Return the 12-digit account id embedded in an IAM role ARN.

    Raises:
        AuthenticationError: If the ARN is not a valid IAM role ARN
    """
    match = ROLE_ARN_PATTERN.match(role_arn or '')
    if not match:
        raise AuthenticationError(
            f"Invalid IAM role ARN format: {role_arn}. "
            "Expected format: arn:aws:iam::123456789012:role/RoleName"
        )
    return match.group(1)


class AWSRoleAuthenticator:
    """Assumes a cross-account IAM role and returns the temporary credentials."""

    def __init__(self, default_region: str = 'us-east-2', duration_seconds: int = 3600):
        """Initialize the authenticator.

        Args:
            default_region: Region recorded on new credentials
            duration_seconds: Requested lifetime of the assumed-role session
        """
        self.default_region = default_region
        self.duration_seconds = duration_seconds

    def assume_role(self, role_arn: str, region: Optional[str] = None) -> StoredCredential:
        """Assume the role and package the result as a stored credential.

        Args:
            role_arn: IAM role ARN to assume
            region: Region to record on the credential, defaults to default_region

        Returns:
            Credential keyed by the role's account id

        Raises:
            AuthenticationError: If the ARN is invalid or role assumption fails
        """
        account_id = extract_account_id(role_arn)

        try:
            logger.info(f"Assuming IAM role {role_arn} for AWS account {account_id}")

            sts_client = boto3.client('sts')
            response = sts_client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=f'{SESSION_NAME_PREFIX}-{account_id}',
                DurationSeconds=self.duration_seconds
            )
            credentials = response['Credentials']

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))

            if error_code == 'AccessDenied':
                raise AuthenticationError(
                    f"Access denied when assuming role {role_arn}. "
                    "Please check that:\n"
                    "1. The role exists and is correctly configured\n"
                    "2. Your current AWS credentials have permission to assume this role\n"
                    "3. The role's trust policy allows your account/user to assume it",
                    details=error_message
                )
            elif error_code == 'InvalidUserID.NotFound':
                raise AuthenticationError(
                    f"IAM role not found: {role_arn}. "
                    "Please check that the role ARN is correct and the role exists.",
                    details=error_message
                )
            else:
                raise AuthenticationError(
                    f"Failed to assume IAM role {role_arn}: {error_code} - {error_message}",
                    details=error_message
                )

        except NoCredentialsError:
            raise AuthenticationError(
                "No AWS credentials found. Please configure your AWS credentials using:\n"
                "1. AWS CLI: aws configure\n"
                "2. Environment variables: AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY\n"
                "3. IAM instance profile (if running on EC2)\n"
                "4. AWS SSO: aws sso login"
            )

        except BotoCoreError as e:
            raise AuthenticationError(f"AWS configuration error: {e}")

        try:
            expiration = credentials['Expiration']
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=timezone.utc)

            material = {
                'access_key_id': credentials['AccessKeyId'],
                'secret_access_key': credentials['SecretAccessKey'],
                'session_token': credentials['SessionToken'],
                'role_arn': role_arn
            }
        except (KeyError, AttributeError) as e:
            raise AuthenticationError(f"Unexpected STS response when assuming {role_arn}: {e}")

        logger.info(f"Successfully assumed IAM role for account {account_id}")
        return StoredCredential(
            provider=Provider.AWS,
            account_id=account_id,
            material=material,
            expires_at=expiration.astimezone(timezone.utc),
            region=region or self.default_region
        )

    def refresh(self, stored: StoredCredential) -> StoredCredential:
        """Re-assume the role recorded on an expired credential, keeping its region."""
        role_arn = stored.material.get('role_arn')
        if not role_arn:
            raise AuthenticationError(f"No role ARN recorded for AWS account {stored.account_id}")
        return self.assume_role(role_arn, region=stored.region)


def create_cloudformation_template(trusted_principal_arn: str) -> str:
    """Generate the CloudFormation template for the cross-account role.

    Args:
        trusted_principal_arn: IAM user or role ARN that runs the scheduler

    Returns:
        CloudFormation template as a YAML string.
    """
    template = f"""AWSTemplateFormatVersion: '2010-09-09'
Description: 'IAM role that lets Cloud Downtime stop and start EC2 instances on a schedule'

Resources:
  ExternalEC2AccessRole:
    Type: AWS::IAM::Role
    Properties:
      RoleName: AllowExternalEC2Management
      AssumeRolePolicyDocument:
        Version: '2012-10-17'
        Statement:
          - Effect: Allow
            Principal:
              AWS: '{trusted_principal_arn}'
            Action: sts:AssumeRole
      Policies:
        - PolicyName: CloudDowntimeEC2Policy
          PolicyDocument:
            Version: '2012-10-17'
            Statement:
              - Effect: Allow
                Action:
                  - ec2:DescribeInstances
                  - ec2:DescribeInstanceStatus
                  - ec2:StopInstances
                  - ec2:StartInstances
                  - ec2:TerminateInstances
                Resource: '*'

Outputs:
  RoleARN:
    Description: 'IAM Role ARN for External EC2 Management'
    Value: !GetAtt ExternalEC2AccessRole.Arn
"""

    return template
