from __future__ import annotations

import json
import re
from typing import Any

from consentgate.core.config import get_settings


# CloudFormation stack names: letter first, then letters, digits and hyphens, at most 128 chars.
_STACK_NAME_MAX = 128
_STACK_NAME_INVALID = re.compile(r"[^a-z0-9-]+")

ARTIFACT_PATH_PREFIX = "consentgate"
ARTIFACT_KEY = f"{ARTIFACT_PATH_PREFIX}/loader.js"

OUTPUT_ENDPOINT_URL = "EndpointUrl"
OUTPUT_EDGE_HANDLE = "EdgeFunctionVersionArn"
OUTPUT_ARTIFACT_BUCKET = "ArtifactBucketName"

BLOCKED_SCRIPT_BODY = "/* ConsentGate: blocked until consent */"

# Runs at the viewer-request stage; any exception forwards the request untouched.
_EDGE_FILTER_SOURCE = """'use strict';

const CONSENT_PATTERN = /(?:^|;\\s*)__COOKIE_NAME__=1(?:;|$)/;
const TRACKING_PATTERN = /\\/gtm\\.js|\\/ns\\.html|\\/gtm\\/|collect/i;
const SCRIPT_PATTERN = /\\.js$/i;

function hasConsent(headers) {
  const cookies = headers.cookie || [];
  return cookies.some((entry) => CONSENT_PATTERN.test(entry.value || ''));
}

function blockedResponse(status, description, contentType, body) {
  return {
    status: status,
    statusDescription: description,
    headers: {
      'content-type': [{ key: 'Content-Type', value: contentType }],
      'cache-control': [{ key: 'Cache-Control', value: 'no-store' }],
    },
    body: body,
  };
}

exports.handler = async (event) => {
  const request = event.Records[0].cf.request;
  try {
    if (hasConsent(request.headers || {})) {
      return request;
    }
    const uri = request.uri || '';
    if (!TRACKING_PATTERN.test(uri)) {
      return request;
    }
    if (SCRIPT_PATTERN.test(uri)) {
      return blockedResponse('200', 'OK', 'application/javascript', '__BLOCKED_SCRIPT_BODY__');
    }
    return blockedResponse('403', 'Forbidden', 'text/plain', 'Consent required');
  } catch (err) {
    console.log('consentgate_filter_error', err && err.message);
    return request;
  }
};
"""

_LOADER_SOURCE = """(function () {
  'use strict';
  var CONSENT_PATTERN = /(?:^|;\\s*)__COOKIE_NAME__=1(?:;|$)/;
  var ENDPOINT = '__ENDPOINT_URL__';
  var current = document.currentScript;
  var containerId = current && current.getAttribute('data-container-id');

  function load() {
    if (!containerId || window.__consentgateLoaded) {
      return;
    }
    window.__consentgateLoaded = true;
    window.dataLayer = window.dataLayer || [];
    window.dataLayer.push({ 'gtm.start': new Date().getTime(), event: 'gtm.js' });
    var script = document.createElement('script');
    script.async = true;
    script.src = ENDPOINT + '/gtm.js?id=' + encodeURIComponent(containerId);
    document.head.appendChild(script);
  }

  if (CONSENT_PATTERN.test(document.cookie)) {
    load();
  }
  window.addEventListener('consentgate:granted', load);
})();
"""


def build_stack_name(prefix: str, subject_id: str, domain_name: str, suffix: str | None = None) -> str:
    """Derive the backend stack handle for a subject's domain.

    The name is deterministic for a given suffix; callers pass a fresh suffix
    only when no prior record exists so a still-tearing-down stack never collides.
    """
    raw = f"{prefix}-{subject_id}-{domain_name.replace('.', '-')}".lower()
    base = _STACK_NAME_INVALID.sub("-", raw)
    base = re.sub(r"-{2,}", "-", base).strip("-")
    if not base or not base[0].isalpha():
        base = f"cg-{base}".rstrip("-")
    if suffix:
        base = base[: _STACK_NAME_MAX - len(suffix) - 1].rstrip("-")
        return f"{base}-{suffix}"
    return base[:_STACK_NAME_MAX].rstrip("-")


def build_edge_filter_source(cookie_name: str | None = None) -> str:
    settings = get_settings()
    name = re.escape(cookie_name or settings.consent_cookie_name)
    return (
        _EDGE_FILTER_SOURCE.replace("__COOKIE_NAME__", name)
        .replace("__BLOCKED_SCRIPT_BODY__", BLOCKED_SCRIPT_BODY)
    )


def build_loader_script(endpoint_url: str, cookie_name: str | None = None) -> str:
    # Serving artifact published next to the distribution once creation completes.
    settings = get_settings()
    name = re.escape(cookie_name or settings.consent_cookie_name)
    return (
        _LOADER_SOURCE.replace("__COOKIE_NAME__", name)
        .replace("__ENDPOINT_URL__", endpoint_url.rstrip("/"))
    )


def build_template(domain_name: str) -> dict[str, Any]:
    """Build the per-domain stack template.

    Pure and deterministic: the same domain name and settings always produce an
    identical document. No network access.
    """
    settings = get_settings()
    return {
        "AWSTemplateFormatVersion": "2010-09-09",
        "Description": f"ConsentGate consent-gating proxy for {domain_name}",
        "Parameters": {
            "DomainName": {"Type": "String", "Default": domain_name},
        },
        "Resources": {
            "ArtifactBucket": {
                "Type": "AWS::S3::Bucket",
                "Properties": {
                    "PublicAccessBlockConfiguration": {
                        "BlockPublicAcls": True,
                        "BlockPublicPolicy": True,
                        "IgnorePublicAcls": True,
                        "RestrictPublicBuckets": True,
                    },
                },
            },
            "ArtifactOriginAccessIdentity": {
                "Type": "AWS::CloudFront::CloudFrontOriginAccessIdentity",
                "Properties": {
                    "CloudFrontOriginAccessIdentityConfig": {
                        "Comment": {"Fn::Sub": "ConsentGate artifacts for ${DomainName}"},
                    },
                },
            },
            "ArtifactBucketPolicy": {
                "Type": "AWS::S3::BucketPolicy",
                "Properties": {
                    "Bucket": {"Ref": "ArtifactBucket"},
                    "PolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Principal": {
                                    "CanonicalUser": {
                                        "Fn::GetAtt": ["ArtifactOriginAccessIdentity", "S3CanonicalUserId"]
                                    }
                                },
                                "Action": "s3:GetObject",
                                "Resource": {"Fn::Sub": "${ArtifactBucket.Arn}/*"},
                            }
                        ],
                    },
                },
            },
            "EdgeRole": {
                "Type": "AWS::IAM::Role",
                "Properties": {
                    "AssumeRolePolicyDocument": {
                        "Version": "2012-10-17",
                        "Statement": [
                            {
                                "Effect": "Allow",
                                "Principal": {
                                    "Service": ["lambda.amazonaws.com", "edgelambda.amazonaws.com"]
                                },
                                "Action": "sts:AssumeRole",
                            }
                        ],
                    },
                    "ManagedPolicyArns": [
                        "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
                    ],
                },
            },
            "EdgeFunction": {
                "Type": "AWS::Lambda::Function",
                "Properties": {
                    "Runtime": settings.edge_function_runtime,
                    "Handler": "index.handler",
                    "Role": {"Fn::GetAtt": ["EdgeRole", "Arn"]},
                    "MemorySize": 128,
                    "Timeout": 5,
                    "Code": {"ZipFile": build_edge_filter_source()},
                },
            },
            "EdgeFunctionVersion": {
                "Type": "AWS::Lambda::Version",
                "Properties": {"FunctionName": {"Ref": "EdgeFunction"}},
            },
            "Distribution": {
                "Type": "AWS::CloudFront::Distribution",
                "Properties": {
                    "DistributionConfig": {
                        "Enabled": True,
                        "Comment": {"Fn::Sub": "ConsentGate proxy for ${DomainName}"},
                        "PriceClass": "PriceClass_100",
                        "Origins": [
                            {
                                "Id": "upstream",
                                "DomainName": settings.upstream_origin_domain,
                                "CustomOriginConfig": {
                                    "HTTPSPort": 443,
                                    "OriginProtocolPolicy": "https-only",
                                },
                            },
                            {
                                "Id": "artifacts",
                                "DomainName": {"Fn::GetAtt": ["ArtifactBucket", "RegionalDomainName"]},
                                "S3OriginConfig": {
                                    "OriginAccessIdentity": {
                                        "Fn::Sub": "origin-access-identity/cloudfront/${ArtifactOriginAccessIdentity}"
                                    }
                                },
                            },
                        ],
                        "DefaultCacheBehavior": {
                            "TargetOriginId": "upstream",
                            "ViewerProtocolPolicy": "redirect-to-https",
                            "AllowedMethods": ["GET", "HEAD", "OPTIONS"],
                            "ForwardedValues": {
                                "QueryString": True,
                                "Cookies": {"Forward": "all"},
                            },
                            "LambdaFunctionAssociations": [
                                {
                                    "EventType": "viewer-request",
                                    "LambdaFunctionARN": {"Ref": "EdgeFunctionVersion"},
                                }
                            ],
                        },
                        "CacheBehaviors": [
                            {
                                "PathPattern": f"/{ARTIFACT_PATH_PREFIX}/*",
                                "TargetOriginId": "artifacts",
                                "ViewerProtocolPolicy": "redirect-to-https",
                                "ForwardedValues": {"QueryString": False},
                            }
                        ],
                    },
                },
            },
        },
        "Outputs": {
            OUTPUT_ENDPOINT_URL: {"Value": {"Fn::Sub": "https://${Distribution.DomainName}"}},
            OUTPUT_EDGE_HANDLE: {"Value": {"Ref": "EdgeFunctionVersion"}},
            OUTPUT_ARTIFACT_BUCKET: {"Value": {"Ref": "ArtifactBucket"}},
        },
    }


def render_template_body(template: dict[str, Any]) -> str:
    # Sorted keys keep the rendered body byte-stable for identical inputs.
    return json.dumps(template, sort_keys=True, separators=(",", ":"))
