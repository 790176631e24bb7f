#!/usr/bin/env python3
import logging

import aws_cdk as cdk
from stacks.settings import load_settings
from stacks.webhook_pipeline_stack import WebhookPipelineStack

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = cdk.App()
settings = load_settings()

WebhookPipelineStack(
    app,
    settings.stack_name,
    settings=settings,
    env=cdk.Environment(
        account=app.node.try_get_context("account"),
        region=app.node.try_get_context("region") or "us-east-1",
    ),
)

app.synth()
