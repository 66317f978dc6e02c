import base64
import hashlib
import hmac
import logging
import os
import re
import time
from time import strftime, gmtime
from urllib.parse import quote
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

import requests
import xmltodict

logger = logging.getLogger(__name__)

#below are MWS access/secret keys, read from the environment
#these are different from the AWS cloud services keys
access_key = os.environ.get('MWS_ACCESS_KEY', '') # length-20 alpha-numeric all-caps string
secret_key = os.environ.get('MWS_SECRET_KEY', '') # length-40 alpha-numeric upper & lower case string
seller_id = os.environ.get('MWS_SELLER_ID', '') # typically a length-14 alpha-numeric all-caps string
marketplace_id = os.environ.get('MWS_MARKETPLACE_ID', 'ATVPDKIKX0DER') # US marketplace unless overridden
host = os.environ.get('MWS_HOST', 'mws.amazonservices.com')
auth_token = os.environ.get('MWS_AUTH_TOKEN', '') # only needed when calling on behalf of another seller
user_agent = {'User-Agent': 'mws-fulfillment/0.1 (Language=Python)'}

REQUEST_TIMEOUT = float(os.environ.get('MWS_REQUEST_TIMEOUT', '30'))
# amazon suggests checking feed status no more than once every 45 seconds
FEED_POLL_INTERVAL = float(os.environ.get('MWS_FEED_POLL_INTERVAL', '45'))
FEED_POLL_ATTEMPTS = int(os.environ.get('MWS_FEED_POLL_ATTEMPTS', '40'))

# endpoint host and default marketplace id per region
# see http://docs.developer.amazonservices.com/en_US/dev_guide/DG_Endpoints.html
MARKETPLACES = {
    'CA': ('mws.amazonservices.ca', 'A2EUQ1WTGCTBG2'),
    'US': ('mws.amazonservices.com', 'ATVPDKIKX0DER'),
    'MX': ('mws.amazonservices.com.mx', 'A1AM78C64UM0Y8'),
    'DE': ('mws-eu.amazonservices.com', 'A1PA6795UKMFR9'),
    'ES': ('mws-eu.amazonservices.com', 'A1RKKUPIHCS9HS'),
    'FR': ('mws-eu.amazonservices.com', 'A13V1IB3VIYZZH'),
    'IT': ('mws-eu.amazonservices.com', 'APJ6JRA9NG5V4'),
    'UK': ('mws-eu.amazonservices.com', 'A1F83G8C2ARO7P'),
    'IN': ('mws.amazonservices.in', 'A21TJRUUN4KGV'),
    'JP': ('mws.amazonservices.jp', 'A1VC38T7YXB528'),
    'CN': ('mws.amazonservices.com.cn', 'AAHKV2X7AFYLW'),
}

ORDER_ACKNOWLEDGEMENT_FEED = '_POST_ORDER_ACKNOWLEDGEMENT_DATA_'
ORDER_FULFILLMENT_FEED = '_POST_ORDER_FULFILLMENT_DATA_'


class MWSError(Exception):
    """Raised when MWS answers with an error response."""
    # the requests response, when there was one
    response = None


class FeedError(MWSError):
    """Raised when Amazon cancels a feed or rejects messages in it."""
    report = None


#MWSCredentials is just for passing around credentials information in a tidy way
class MWSCredentials(object):
    def __init__(self, access_key, secret_key, seller_id, marketplace_id, user_agent,
                 host='mws.amazonservices.com', auth_token=''):
        self.access_key = access_key
        self.secret_key = secret_key
        self.seller_id = seller_id
        self.marketplace_id = marketplace_id
        self.user_agent = user_agent
        self.host = host
        self.auth_token = auth_token

creds = MWSCredentials(access_key, secret_key, seller_id, marketplace_id, user_agent, host, auth_token)


def credentials_for_region(region, access_key, secret_key, seller_id, auth_token=''):
    if region not in MARKETPLACES:
        raise MWSError("Incorrect region supplied ('{0}'). Must be one of the following: {1}".format(
            region, ', '.join(sorted(MARKETPLACES))))
    region_host, region_marketplace_id = MARKETPLACES[region]
    return MWSCredentials(access_key, secret_key, seller_id, region_marketplace_id, user_agent,
                          region_host, auth_token)


def is_blank(value):
    """Mirror of the usual "blank" notion: None, False, whitespace-only
    strings and empty collections. Numbers, including 0, are never blank."""
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def remove_empty(d):
    return dict((k, v) for k, v in d.items() if not is_blank(v))


def camelize(name):
    # list_marketplace_participations -> ListMarketplaceParticipations
    return ''.join(part[:1].upper() + part[1:] for part in name.split('_'))


def as_list(value):
    # xmltodict gives a dict for one child and a list for several
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]

# BEGIN SIGNING AND TRANSPORT

def get_timestamp():
    return strftime("%Y-%m-%dT%H:%M:%SZ", gmtime())

def calc_md5(content):
    if isinstance(content, str):
        content = content.encode('utf-8')
    md = hashlib.md5()
    md.update(content)
    return base64.b64encode(md.digest()).decode('ascii')

def build_sig_str(c, extra_sig_params=None):
    sig_params = {  'AWSAccessKeyId' : c.access_key,
                    'SellerId' : c.seller_id,
                    'SignatureVersion': '2',
                    'Timestamp': get_timestamp(),
                    'Version': '2009-01-01',
                    'SignatureMethod': 'HmacSHA256' }
    if c.auth_token:
        sig_params['MWSAuthToken'] = c.auth_token
    sig_params.update(extra_sig_params or {})
    sig_params_str = '&'.join(['%s=%s' % (k, quote(str(sig_params[k]), safe='-_.~')) for k in sorted(sig_params)])
    return sig_params_str

def get_url_with_sig(c, verb, uri, sig_params_str):
    sig_str = '\n'.join([verb, c.host.lower(), uri, sig_params_str])
    newhmac = hmac.new(c.secret_key.encode('utf-8'), sig_str.encode('utf-8'), hashlib.sha256)
    hashed_sig_str = quote(base64.b64encode(newhmac.digest()).decode('ascii'), safe='-_.~')
    return 'https://' + c.host + uri + '?' + sig_params_str + '&Signature=' + hashed_sig_str

def error_message(response):
    # MWS errors come back as <ErrorResponse><Error><Code/><Message/></Error></ErrorResponse>
    try:
        error = as_list(xmltodict.parse(remove_namespace(response.text))['ErrorResponse']['Error'])[0]
        return '{0} {1}: {2}'.format(response.status_code, error.get('Code'), error.get('Message'))
    except (ExpatError, KeyError, TypeError, IndexError, AttributeError):
        return '{0}: {1}'.format(response.status_code, response.text)

def send_request(verb, url, headers, data=None, timeout=None):
    try:
        r = requests.request(verb, url, headers=headers, data=data,
                             timeout=timeout or REQUEST_TIMEOUT)
        r.raise_for_status()
        return r
    except requests.exceptions.HTTPError as e:
        error = MWSError(error_message(e.response))
        error.response = e.response
        logger.error('MWS request failed: %s', error)
        raise error
    except requests.exceptions.RequestException:
        logger.exception('MWS request failed before a response was received')
        raise

# BEGIN RESPONSE PARSING

def remove_namespace(xml):
    regex = re.compile(' xmlns(:ns2)?="[^"]+"|(ns2:)|(xml:)')
    return regex.sub('', xml)


class DictWrapper(object):
    def __init__(self, xml, rootkey=None):
        self.original = xml
        self._rootkey = rootkey
        self._mydict = xmltodict.parse(remove_namespace(xml))
        self._response_dict = self._mydict.get(list(self._mydict.keys())[0], self._mydict)

    @property
    def parsed(self):
        if self._rootkey:
            return self._response_dict.get(self._rootkey)
        return self._response_dict


class Base(object):
    """Shared plumbing for the API classes: holds the seller session and
    turns an MWS action plus parameters into a signed call."""

    def __init__(self, connection=None):
        self.connection = connection or creds

    def request(self, action, verb='POST', uri='/', version='2009-01-01', params=None,
                body=None, headers=None, parse_result=True):
        extra_sig_params = {'Action': action, 'Version': version}
        extra_sig_params.update(remove_empty(params or {}))
        sig_params_str = build_sig_str(self.connection, extra_sig_params)
        url = get_url_with_sig(self.connection, verb, uri, sig_params_str)
        request_headers = dict(self.connection.user_agent)
        request_headers.update(headers or {})
        logger.debug('%s %s%s Action=%s', verb, self.connection.host, uri, action)
        r = send_request(verb, url, request_headers, data=body)
        return DictWrapper(r.text, action + 'Result' if parse_result else None)


def def_request(name, verb='GET', uri='/', version='2009-01-01'):
    """Declare an MWS call on a Base subclass.

    The action is the camelized method name and keyword arguments become
    camelized request parameters, so ``next_token='x'`` is sent as
    ``NextToken=x``. The generated method returns the parsed
    ``<Action>Result`` node.
    """
    action = camelize(name)

    def request(self, **params):
        extra = dict((camelize(k), v) for k, v in params.items())
        return self.request(action, verb=verb, uri=uri, version=version, params=extra).parsed

    request.__name__ = name
    request.__doc__ = '{0} {1} {2} (version {3})'.format(verb, uri, action, version)
    return request

# BEGIN FEEDS API

def check_processing_report(report):
    summary = report.get('ProcessingSummary') or {}
    results = as_list(report.get('Result'))
    for result in results:
        if result.get('ResultCode') == 'Warning':
            logger.warning('feed message %s warning %s: %s', result.get('MessageID'),
                           result.get('ResultMessageCode'), result.get('ResultDescription'))
    if int(summary.get('MessagesWithError') or 0) > 0:
        descriptions = [r.get('ResultDescription') for r in results if r.get('ResultCode') == 'Error']
        error = FeedError('{0} of {1} feed messages failed: {2}'.format(
            summary.get('MessagesWithError'), summary.get('MessagesProcessed'), '; '.join(
                str(d) for d in descriptions)))
        error.report = report
        raise error
    return True


class Feeds(object):
    """Feed submission for Base subclasses. Each feed goes to the marketplace
    of the active connection."""

    def submit_feed(self, feed_type, content, wait=True):
        #a feed can be an XML or tab-delimited file; only XML is produced here
        body = content.encode('utf-8') if isinstance(content, str) else content
        extra_headers = {'Content-MD5': calc_md5(body), 'Content-Type': 'text/xml'}
        params = {'FeedType': feed_type,
                  'PurgeAndReplace': 'false',
                  'MarketplaceIdList.Id.1': self.connection.marketplace_id}
        info = self.request('SubmitFeed', params=params, body=body,
                            headers=extra_headers).parsed['FeedSubmissionInfo']
        feed_submission_id = info['FeedSubmissionId']
        logger.info('submitted %s feed as submission %s', feed_type, feed_submission_id)
        if not wait:
            return feed_submission_id
        self.wait_for_feed(feed_submission_id)
        return check_processing_report(self.get_feed_submission_result(feed_submission_id))

    def get_feed_submission_list(self, feed_submission_ids=None):
        params = dict(('FeedSubmissionIdList.Id.{0}'.format(i + 1), str(j))
                      for i, j in enumerate(feed_submission_ids or []))
        return self.request('GetFeedSubmissionList', params=params).parsed

    def get_feed_submission_result(self, feed_submission_id):
        # the result is the processing report envelope itself, not an <Action>Result node
        report_envelope = self.request('GetFeedSubmissionResult',
                                       params={'FeedSubmissionId': feed_submission_id},
                                       parse_result=False).parsed
        return report_envelope['Message']['ProcessingReport']

    def wait_for_feed(self, feed_submission_id, interval=None, attempts=None):
        interval = FEED_POLL_INTERVAL if interval is None else interval
        attempts = attempts or FEED_POLL_ATTEMPTS
        for attempt in range(attempts):
            result = self.get_feed_submission_list([feed_submission_id])
            info = as_list(result.get('FeedSubmissionInfo'))[0]
            status = info['FeedProcessingStatus']
            if status == '_DONE_':
                return info
            if status == '_CANCELLED_':
                raise FeedError('feed submission {0} was cancelled'.format(feed_submission_id))
            logger.info('feed submission %s is %s (check %d of %d)',
                        feed_submission_id, status, attempt + 1, attempts)
            time.sleep(interval)
        raise MWSError('feed submission {0} not processed after {1} checks'.format(
            feed_submission_id, attempts))

# BEGIN FULFILLMENT API
# feed schemas are described in
# https://images-na.ssl-images-amazon.com/images/G/01/rainier/help/XML_Documentation_Intl.pdf

ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<AmazonEnvelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xsi:noNamespaceSchemaLocation="amzn-envelope.xsd">
  <Header>
    <DocumentVersion>1.01</DocumentVersion>
    <MerchantIdentifier>{seller_id}</MerchantIdentifier>
  </Header>
  <MessageType>{message_type}</MessageType>
  <Message>
    <MessageID>1</MessageID>
{body}
  </Message>
</AmazonEnvelope>
"""

def element(name, value, depth):
    text = '' if value is None else escape(str(value))
    return '{0}<{1}>{2}</{1}>'.format('  ' * depth, name, text)

def block(name, lines, depth):
    indent = '  ' * depth
    return ['{0}<{1}>'.format(indent, name)] + lines + ['{0}</{1}>'.format(indent, name)]

def envelope(seller_id, message_type, body_lines):
    return ENVELOPE.format(seller_id=escape(str(seller_id)), message_type=message_type,
                           body='\n'.join(body_lines))

def format_fulfillment_date(value):
    # strings are trusted to already be in the YYYY-MM-DDTHH:MM:SS+HH:MM form
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat(timespec='seconds')

def order_acknowledgement_xml(seller_id, amazon_order_id, status, merchant_order_id=None, items=None):
    # items maps amazon order item code -> merchant item id
    # example) items = {'47979057082330': '438'}
    lines = [element('AmazonOrderID', amazon_order_id, 3)]
    if not is_blank(merchant_order_id):
        lines.append(element('MerchantOrderID', merchant_order_id, 3))
    lines.append(element('StatusCode', status, 3))
    for item_code, merchant_item_id in (items or {}).items():
        item = [element('AmazonOrderItemCode', item_code, 4)]
        if not is_blank(merchant_item_id):
            item.append(element('MerchantOrderItemID', merchant_item_id, 4))
        lines.extend(block('Item', item, 3))
    return envelope(seller_id, 'OrderAcknowledgement', block('OrderAcknowledgement', lines, 2))

def shipping_confirmation_xml(seller_id, date, carrier, shipping_method, tracking, amazon_order_id=None,
                              merchant_order_id=None, merchant_fulfillment_id=None, items=None):
    lines = []
    if not is_blank(amazon_order_id):
        lines.append(element('AmazonOrderID', amazon_order_id, 3))
    else:
        lines.append(element('MerchantOrderID', merchant_order_id, 3))
    if not is_blank(merchant_fulfillment_id):
        lines.append(element('MerchantFulfillmentID', merchant_fulfillment_id, 3))
    lines.append(element('FulfillmentDate', format_fulfillment_date(date), 3))
    lines.extend(block('FulfillmentData', [
        element('CarrierCode', carrier, 4),
        element('ShippingMethod', shipping_method, 4),
        element('ShipperTrackingNumber', tracking, 4),
    ], 3))
    for item in items or []:
        item_lines = []
        if not is_blank(item.get('amazon_order_item_code')):
            item_lines.append(element('AmazonOrderItemCode', item['amazon_order_item_code'], 4))
        else:
            item_lines.append(element('MerchantOrderItemID', item.get('merchant_order_item_id'), 4))
        if not is_blank(item.get('merchant_fulfillment_item_id')):
            item_lines.append(element('MerchantFulfillmentItemID', item['merchant_fulfillment_item_id'], 4))
        if not is_blank(item.get('quantity')):
            item_lines.append(element('Quantity', item['quantity'], 4))
        lines.extend(block('Item', item_lines, 3))
    return envelope(seller_id, 'OrderFulfillment', block('OrderFulfillment', lines, 2))


class Fulfillment(Base, Feeds):

    def order_acknowledgement(self, amazon_order_id, status, merchant_order_id=None, items=None):
        """Acknowledge an order, optionally mapping its items to merchant ids.

        example) order_acknowledgement('112-2598432-0713054', 'Success', merchant_order_id=336,
                                       items={'47979057082330': '438'})

        Returns True once Amazon has processed the feed without errors,
        otherwise raises MWSError/FeedError.
        """
        xml = order_acknowledgement_xml(self.connection.seller_id, amazon_order_id, status,
                                        merchant_order_id, items)
        return self.submit_feed(ORDER_ACKNOWLEDGEMENT_FEED, xml)

    def shipping_confirmation(self, date, carrier, shipping_method, tracking, amazon_order_id=None,
                              merchant_order_id=None, merchant_fulfillment_id=None, items=None):
        """Confirm shipment of an order identified by amazon_order_id or,
        failing that, merchant_order_id.

        example) shipping_confirmation(datetime(2013, 6, 3, 17, 58, 25), 'USPS', 'First Class',
                                       '9400110200883803727403', merchant_order_id=336)

        date is a datetime or an already formatted string. items is a list of
        dicts with amazon_order_item_code or merchant_order_item_id, and
        optionally merchant_fulfillment_item_id and quantity.
        """
        xml = shipping_confirmation_xml(self.connection.seller_id, date, carrier, shipping_method, tracking,
                                        amazon_order_id, merchant_order_id, merchant_fulfillment_id, items)
        return self.submit_feed(ORDER_FULFILLMENT_FEED, xml)

# BEGIN SELLERS API

class Sellers(Base):

    list_marketplace_participations = def_request('list_marketplace_participations',
                                                  verb='GET',
                                                  uri='/Sellers/2011-07-01',
                                                  version='2011-07-01')

    list_marketplace_participations_by_next_token = def_request('list_marketplace_participations_by_next_token',
                                                                verb='GET',
                                                                uri='/Sellers/2011-07-01',
                                                                version='2011-07-01')

    get_service_status = def_request('get_service_status',
                                     verb='GET',
                                     uri='/Sellers/2011-07-01',
                                     version='2011-07-01')

    def all_marketplace_participations(self):
        participations = []
        marketplaces = []
        result = self.list_marketplace_participations()
        while True:
            participations.extend(as_list((result.get('ListParticipations') or {}).get('Participation')))
            marketplaces.extend(as_list((result.get('ListMarketplaces') or {}).get('Marketplace')))
            if is_blank(result.get('NextToken')):
                break
            result = self.list_marketplace_participations_by_next_token(next_token=result['NextToken'])
        return {'participations': participations, 'marketplaces': marketplaces}
