import logging
from typing import Dict

from aws_cdk import (
    Stack,
    Duration,
    Aws,
    Fn,
    RemovalPolicy,
    CfnOutput,
    CfnParameter,
    aws_apigateway as apigateway,
    aws_iam as iam,
    aws_lambda as lambda_,
    aws_logs as logs,
    aws_sqs as sqs,
    aws_lambda_event_sources as lambda_events,
)
from cargo_lambda_cdk import RustFunction
from constructs import Construct

from stacks.settings import (
    PARAMETER_NAME_PATTERN,
    PARAMETER_VERSION_PATTERN,
    StackSettings,
)

logger = logging.getLogger(__name__)

QUEUE_VISIBILITY_TIMEOUT = Duration.minutes(20)
QUEUE_RETENTION_PERIOD = Duration.days(14)
WEBHOOK_TIMEOUT = Duration.seconds(10)
PROCESS_QUEUE_TIMEOUT = Duration.minutes(5)
FUNCTION_MEMORY_SIZE = 256
VISIBILITY_HEADROOM = 4
LOG_RETENTION = logs.RetentionDays.ONE_MONTH

LAMBDA_ARCHITECTURES = {
    "x86_64": lambda_.Architecture.X86_64,
    "arm64": lambda_.Architecture.ARM_64,
}


class WebhookPipelineStack(Stack):
    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        settings: StackSettings,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.settings = settings

        # Visibility timeout >= 4x processor timeout
        if QUEUE_VISIBILITY_TIMEOUT.to_seconds() < (
            VISIBILITY_HEADROOM * PROCESS_QUEUE_TIMEOUT.to_seconds()
        ):
            raise ValueError(
                f"Queue visibility timeout must be at least {VISIBILITY_HEADROOM}x "
                "the ProcessQueueFunction timeout"
            )

        # ============================================================
        # API Gateway (REGIONAL, display name = stack name)
        # ============================================================
        self.api = apigateway.RestApi(
            self,
            "RestApi",
            rest_api_name=self.stack_name,
            endpoint_types=[apigateway.EndpointType.REGIONAL],
        )

        CfnOutput(
            self,
            "RestApiEndpoint",
            value=self.api.url_for_path(),
        )

        CfnOutput(
            self,
            "RestApiName",
            value=self.api.rest_api_name,
        )

        CfnOutput(
            self,
            "RestApiArn",
            value=Fn.join(
                "",
                [
                    "arn:",
                    Aws.PARTITION,
                    ":apigateway:",
                    Aws.REGION,
                    "::/restapis/",
                    self.api.rest_api_id,
                ],
            ),
        )

        # ============================================================
        # Deploy-time configuration parameters
        # Schema: SSM parameter name + pinned version, both strings.
        #
        # A config change is a redeploy with a new version value, so a
        # rollback is just a stack parameter change.
        # ============================================================
        self.config_parameter_name = CfnParameter(
            self,
            "ConfigParameterName",
            type="String",
            description="Fully qualified name of the SSM config parameter",
            allowed_pattern=PARAMETER_NAME_PATTERN,
            default=settings.config_parameter_name,
        )

        self.config_parameter_version = CfnParameter(
            self,
            "ConfigParameterVersion",
            type="String",
            description="Pinned version of the SSM config parameter",
            allowed_pattern=PARAMETER_VERSION_PATTERN,
            default=settings.config_parameter_version,
        )

        if settings.config_parameter_name and settings.config_parameter_version:
            logger.info(
                "Pinning config parameter %s at version %s",
                settings.config_parameter_name,
                settings.config_parameter_version,
            )
        else:
            for parameter, value in (
                ("ConfigParameterName", settings.config_parameter_name),
                ("ConfigParameterVersion", settings.config_parameter_version),
            ):
                if not value:
                    logger.info(
                        "%s has no default; pass it with --parameters at deploy time",
                        parameter,
                    )

        # ============================================================
        # SQS: Webhook Queue (no DLQ)
        #
        # Visibility timeout is 4x the ProcessQueueFunction timeout (5 min),
        # so a slow message is never redelivered while still in flight.
        # ============================================================
        self.queue = sqs.Queue(
            self,
            "Queue",
            visibility_timeout=QUEUE_VISIBILITY_TIMEOUT,
            retention_period=QUEUE_RETENTION_PERIOD,
        )

        CfnOutput(
            self,
            "QueueName",
            value=self.queue.queue_name,
        )

        CfnOutput(
            self,
            "QueueArn",
            value=self.queue.queue_arn,
        )

        # ============================================================
        # Webhook Lambda (validates and enqueues)
        # ============================================================
        self.webhook_function = self._rust_function(
            "WebhookFunction",
            binary_name="webhook",
            timeout=WEBHOOK_TIMEOUT,
        )

        # Webhook Lambda IAM Permissions (Least Privilege):
        # - Send to SQS: Enqueue accepted webhooks
        # - Read the single config parameter
        self.queue.grant_send_messages(self.webhook_function)
        self._grant_config_read(self.webhook_function)

        # POST / only, proxy integration (bodies passed through verbatim)
        self.api.root.add_method(
            "POST",
            apigateway.LambdaIntegration(
                self.webhook_function,
                proxy=True,
            ),
        )

        self._function_outputs("WebhookFunction", self.webhook_function)

        # ============================================================
        # Process Queue Lambda
        # SQS triggered, one message per invocation
        # ============================================================
        self.process_queue_function = self._rust_function(
            "ProcessQueueFunction",
            binary_name="process_queue",
            timeout=PROCESS_QUEUE_TIMEOUT,
        )

        # Process Queue Lambda IAM Permissions (Least Privilege):
        # - Consume from SQS: receive, delete, change visibility
        # - Read the single config parameter
        # - NO send to SQS
        self.queue.grant_consume_messages(self.process_queue_function)
        self._grant_config_read(self.process_queue_function)

        # Failed records are reported back individually; only those are
        # redelivered after the visibility timeout.
        self.process_queue_function.add_event_source(
            lambda_events.SqsEventSource(
                self.queue,
                batch_size=1,
                max_batching_window=Duration.seconds(0),
                report_batch_item_failures=True,
            )
        )

        self._function_outputs("ProcessQueueFunction", self.process_queue_function)

    def _rust_function(
        self, construct_id: str, binary_name: str, timeout: Duration
    ) -> RustFunction:
        log_group = logs.LogGroup(
            self,
            f"{construct_id}LogGroup",
            retention=LOG_RETENTION,
            removal_policy=RemovalPolicy.DESTROY,
        )

        return RustFunction(
            self,
            construct_id,
            manifest_path=str(self.settings.manifest_path),
            binary_name=binary_name,
            runtime="provided.al2023",
            architecture=LAMBDA_ARCHITECTURES[self.settings.architecture],
            log_group=log_group,
            timeout=timeout,
            memory_size=FUNCTION_MEMORY_SIZE,
            environment=self._handler_environment(),
            logging_format=lambda_.LoggingFormat.JSON,
            application_log_level_v2=lambda_.ApplicationLogLevel.INFO,
        )

    def _handler_environment(self) -> Dict[str, str]:
        return {
            "QUEUE_URL": self.queue.queue_url,
            "CONFIG_PARAMETER_NAME": self.config_parameter_name.value_as_string,
            "CONFIG_PARAMETER_VERSION": self.config_parameter_version.value_as_string,
        }

    def _grant_config_read(self, function: lambda_.Function) -> None:
        # Name-pinned ARN: no wildcard, no list, no write
        function.add_to_role_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["ssm:GetParameter"],
                resources=[
                    Fn.sub(
                        "arn:${AWS::Partition}:ssm:${AWS::Region}:${AWS::AccountId}"
                        ":parameter${ConfigParameterName}"
                    ),
                ],
            )
        )

    def _function_outputs(self, prefix: str, function: lambda_.Function) -> None:
        CfnOutput(
            self,
            f"{prefix}Name",
            value=function.function_name,
        )

        CfnOutput(
            self,
            f"{prefix}Arn",
            value=function.function_arn,
        )

        CfnOutput(
            self,
            f"{prefix}LogGroupName",
            value=function.log_group.log_group_name,
        )

        CfnOutput(
            self,
            f"{prefix}LogGroupArn",
            value=function.log_group.log_group_arn,
        )
