"""Tests for subnet module."""

import pytest

from vmprovision.subnet import (
    InvalidAddress,
    InvalidBitString,
    InvalidPrefixLength,
    SubnetError,
    gateway_address,
    network_address,
    parse_cidr,
    subnet_mask,
    to_binary_string,
    to_dotted_decimal,
)


class TestBinaryConversion:
    """Tests for dotted-decimal <-> bit string conversion."""

    def test_to_binary_string(self):
        assert to_binary_string("172.25.14.32") == "10101100000110010000111000100000"

    def test_to_binary_string_zero_pads_octets(self):
        assert to_binary_string("0.0.0.1") == "0" * 31 + "1"

    @pytest.mark.parametrize("address", ["0.0.0.0", "10.0.0.1", "192.168.1.254", "255.255.255.255"])
    def test_round_trip(self, address):
        assert to_dotted_decimal(to_binary_string(address)) == address

    @pytest.mark.parametrize("address", ["256.0.0.1", "1.2.3", "1.2.3.4.5", "a.b.c.d", "1..2.3", "-1.0.0.0", ""])
    def test_invalid_address(self, address):
        with pytest.raises(InvalidAddress):
            to_binary_string(address)

    @pytest.mark.parametrize("address", ["0000000010.0.0.1", "10.0000.0.1", "10.0.0.0001"])
    def test_octets_longer_than_three_digits_rejected(self, address):
        with pytest.raises(InvalidAddress, match="three digits"):
            to_binary_string(address)

    def test_padded_octets_round_trip_to_canonical_form(self):
        assert to_dotted_decimal(to_binary_string("010.001.000.255")) == "10.1.0.255"

    def test_to_dotted_decimal(self):
        assert to_dotted_decimal("11111111111111111111111111100000") == "255.255.255.224"

    @pytest.mark.parametrize("bits", ["1" * 31, "1" * 33, "0" * 31 + "2", ""])
    def test_invalid_bit_string(self, bits):
        with pytest.raises(InvalidBitString):
            to_dotted_decimal(bits)


class TestSubnetMask:
    """Tests for subnet_mask."""

    def test_prefix_27(self):
        assert subnet_mask(27) == "255.255.255.224"

    def test_bounds(self):
        assert subnet_mask(0) == "0.0.0.0"
        assert subnet_mask(32) == "255.255.255.255"

    def test_leading_ones(self):
        for prefix_length in range(33):
            bits = to_binary_string(subnet_mask(prefix_length))
            assert bits == "1" * prefix_length + "0" * (32 - prefix_length)

    @pytest.mark.parametrize("prefix_length", [-1, 33, True, "24", 24.0])
    def test_invalid_prefix(self, prefix_length):
        with pytest.raises(InvalidPrefixLength):
            subnet_mask(prefix_length)


class TestNetworkAndGateway:
    """Tests for network_address and gateway_address."""

    def test_aligned_network(self):
        assert network_address("172.25.14.32", 27) == "172.25.14.32"

    def test_host_bits_cleared(self):
        assert network_address("172.25.14.45", 27) == "172.25.14.32"
        assert network_address("10.1.2.3", 8) == "10.0.0.0"
        assert network_address("10.1.2.3", 0) == "0.0.0.0"
        assert network_address("10.1.2.3", 32) == "10.1.2.3"

    def test_gateway_is_first_host(self):
        assert gateway_address("172.25.14.32", 27) == "172.25.14.33"
        assert gateway_address("172.25.14.45", 27) == "172.25.14.33"
        assert gateway_address("192.168.1.200", 24) == "192.168.1.1"

    def test_gateway_on_slash_30(self):
        assert gateway_address("10.0.0.6", 30) == "10.0.0.5"

    @pytest.mark.parametrize("prefix_length", [31, 32])
    def test_gateway_rejects_networks_without_hosts(self, prefix_length):
        with pytest.raises(InvalidPrefixLength):
            gateway_address("10.0.0.1", prefix_length)

    def test_invalid_address_reported_first(self):
        with pytest.raises(InvalidAddress):
            network_address("999.1.1.1", 24)


class TestParseCidr:
    """Tests for parse_cidr."""

    def test_parse(self):
        assert parse_cidr("172.25.14.32/27") == ("172.25.14.32", 27)

    def test_normalizes_leading_zeros(self):
        assert parse_cidr("010.000.001.002/8") == ("10.0.1.2", 8)

    def test_out_of_range_octet(self):
        with pytest.raises(InvalidAddress):
            parse_cidr("999.1.1.1/24")

    def test_out_of_range_prefix(self):
        with pytest.raises(InvalidPrefixLength):
            parse_cidr("10.0.0.1/33")

    @pytest.mark.parametrize("cidr", ["10.0.0.1", "10.0.0.1/24/1", "10.0.0.1/"])
    def test_malformed(self, cidr):
        with pytest.raises(SubnetError):
            parse_cidr(cidr)

    def test_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            parse_cidr("10.0.0.1/33")
