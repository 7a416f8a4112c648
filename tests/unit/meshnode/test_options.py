"""
Connection Options Unit Tests
=============================
"""

import pytest

from config import SubnetConfig
from meshnode.exceptions import PayloadDecodeError, SubnetMismatch
from meshnode.options import ConnectionOption, ConnectionOptions, Subnet


class TestSubnet:
    """Test subnet parameters."""

    def test_defaults(self):
        subnet = Subnet()
        assert subnet.to_payload() == [20, 3, 256, 256, 8, 0, ""]
        assert subnet.address_size == 32

    def test_from_config(self):
        subnet = Subnet.from_config(SubnetConfig(k=8, ell=4, network_description="testnet"))
        assert subnet.k == 8
        assert subnet.ell == 4
        assert subnet.network_description == "testnet"

    def test_payload_roundtrip(self):
        subnet = Subnet(k=10, alpha=2, tau=128, ell=5, transport_id=1, network_description="lab")
        assert Subnet.from_payload(subnet.to_payload()) == subnet

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            Subnet(k=0)
        with pytest.raises(ValueError):
            Subnet(tau=300)
        with pytest.raises(ValueError):
            Subnet(beta=255, tau=255)

    @pytest.mark.parametrize("setting", [
        None,
        [20, 3, 256, 256, 8, 0],
        [20, 3, 256, 256, 8, 0, 7],
        [20, "3", 256, 256, 8, 0, ""],
        [20, True, 256, 256, 8, 0, ""],
        [0, 3, 256, 256, 8, 0, ""],
    ])
    def test_malformed_setting(self, setting):
        with pytest.raises(PayloadDecodeError):
            Subnet.from_payload(setting)

    def test_check_matching(self):
        Subnet().check(Subnet())

    def test_check_reports_first_mismatch(self):
        with pytest.raises(SubnetMismatch) as exc_info:
            Subnet().check(Subnet(tau=128, ell=4))

        assert exc_info.value.field_name == "tau"
        assert exc_info.value.ours == 256
        assert exc_info.value.theirs == 128

    def test_description_mismatch(self):
        with pytest.raises(SubnetMismatch):
            Subnet(network_description="a").check(Subnet(network_description="b"))


class TestConnectionOptions:
    """Test per-connection state."""

    def test_option_ids(self):
        assert ConnectionOption.COMPRESSION == 0
        assert ConnectionOption.PREFERRED_COMPRESSION == 1
        assert ConnectionOption.SUBNET == 2

    def test_negotiated_requires_both_directions(self):
        options = ConnectionOptions()
        assert not options.negotiated

        options.subnet_received = True
        assert not options.negotiated

        options.subnet_acked_by_peer = True
        assert options.negotiated
        assert options.to_dict()["negotiated"] is True
